"""
Security Module

- Webhook sender verification
- Environment validation
- Secure error handling
- Audit logging
"""

from .audit_logger import audit_logger
from .error_handlers import error_handler
from .env_validator import env_validator

__all__ = [
    'audit_logger',
    'error_handler',
    'env_validator'
]
