"""
Source package initialization.

Subpackages: auth, email_processing, integrations, storage.
"""
