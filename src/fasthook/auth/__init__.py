"""Authentication module."""

from fasthook.auth.dependencies import (
    Auth,
    AuthContext,
    get_auth_context,
    get_endpoint_with_access,
)

__all__ = [
    "Auth",
    "AuthContext",
    "get_auth_context",
    "get_endpoint_with_access",
]
