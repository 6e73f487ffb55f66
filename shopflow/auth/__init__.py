from .identity import (
    CurrentUser,
    IdentityProvider,
    JWTIdentityProvider,
    require_admin,
    require_user,
)

__all__ = [
    "CurrentUser",
    "IdentityProvider",
    "JWTIdentityProvider",
    "require_admin",
    "require_user",
]
