"""
API Routes Package

Centralizes route management with explicit module imports.
"""

from api.routes import webhooks
from api.routes import subscriptions
from api.routes import processing

__all__ = ["webhooks", "subscriptions", "processing"]
