"""
Storage package: SQLAlchemy models, sessions, token encryption and repositories.
"""

from .database import get_db_session, init_db
from .encryption import EncryptionConfigError, validate_encryption_config
from .models import ChangeType, ProcessingStatus

__all__ = [
    'get_db_session',
    'init_db',
    'EncryptionConfigError',
    'validate_encryption_config',
    'ChangeType',
    'ProcessingStatus'
]
