# backend/app/auth/__init__.py
from .auth import (
    AuthService,
    Principal,
    AccessResolver,
    resolve_principal,
    get_current_principal,
    get_access_resolver
)

__all__ = [
    "AuthService",
    "Principal",
    "AccessResolver",
    "resolve_principal",
    "get_current_principal",
    "get_access_resolver"
]
