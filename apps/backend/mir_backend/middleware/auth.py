"""
Caller identity.

Sign-in happens upstream; requests arrive with the authenticated user id and
the caller's GitHub credential, which is used for syncs and read-through fetches.
"""
from dataclasses import dataclass
from typing import Annotated

from fastapi import Header

from mir_backend.core.errors import AuthenticationRequiredError

BEARER_PREFIX = "Bearer "


@dataclass(frozen=True)
class AuthContext:
    user_id: int
    token: str


async def require_identity(
    x_user_id: Annotated[str | None, Header()] = None,
    authorization: Annotated[str | None, Header()] = None,
) -> AuthContext:
    if not x_user_id:
        raise AuthenticationRequiredError("missing X-User-Id")

    try:
        user_id = int(x_user_id)
    except ValueError:
        raise AuthenticationRequiredError("invalid X-User-Id")

    if not authorization or not authorization.startswith(BEARER_PREFIX):
        raise AuthenticationRequiredError("missing bearer credential")

    token = authorization[len(BEARER_PREFIX):].strip()
    if not token:
        raise AuthenticationRequiredError("empty bearer credential")

    return AuthContext(user_id=user_id, token=token)
