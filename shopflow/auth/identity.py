"""Identity provider interface and role guards."""

from __future__ import annotations

import logging
from typing import Literal, Optional, Protocol, Sequence

import jwt
from pydantic import BaseModel

from ..errors import NotAuthenticatedError, NotAuthorizedError

logger = logging.getLogger(__name__)


class CurrentUser(BaseModel):
    id: str
    role: Literal["admin", "technician", "customer"] = "technician"


class IdentityProvider(Protocol):
    def get_current_user(self, token: Optional[str]) -> CurrentUser | None:
        """Return the verified user behind ``token`` or ``None``."""


class JWTIdentityProvider:
    """Verifies bearer tokens signed with a shared secret.

    The ``sub`` claim becomes the user id and the ``role`` claim the role.
    """

    def __init__(
        self,
        secret: str,
        algorithms: Sequence[str] = ("HS256",),
        audience: Optional[str] = None,
        leeway: int = 30,
    ) -> None:
        self._secret = secret
        self._algorithms = list(algorithms)
        self._audience = audience
        self._leeway = leeway

    def get_current_user(self, token: Optional[str]) -> CurrentUser | None:
        if not token:
            return None
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=self._algorithms,
                audience=self._audience,
                leeway=self._leeway,
                options={"require": ["sub"], "verify_aud": self._audience is not None},
            )
        except jwt.PyJWTError as e:
            logger.info(f"Rejected bearer token: {e}")
            return None
        return CurrentUser(id=str(claims["sub"]), role=claims.get("role", "technician"))


def require_user(user: CurrentUser | None) -> CurrentUser:
    if user is None:
        raise NotAuthenticatedError("Not authenticated")
    return user


def require_admin(user: CurrentUser | None) -> CurrentUser:
    user = require_user(user)
    if user.role != "admin":
        raise NotAuthorizedError("Not authorized")
    return user
