import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Annotated, Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .lifecycle import Actor

bearer = HTTPBearer(auto_error=False)

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"
JWT_ISSUER = os.getenv("JWT_ISSUER", "yachtbook")


@dataclass(frozen=True)
class Principal:
    """The caller behind a bearer token; token roles are booking actors."""

    sub: str
    actor: Actor


def issue_token(sub: str, role: Actor | str, ttl_minutes: int = 60) -> str:
    actor = Actor(role)
    now = datetime.now(tz=timezone.utc)
    payload = {
        "iss": JWT_ISSUER,
        "sub": sub,
        "role": actor.value,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def decode_token(token: str) -> Principal:
    try:
        claims = jwt.decode(
            token,
            JWT_SECRET,
            algorithms=[JWT_ALG],
            issuer=JWT_ISSUER,
            options={"require": ["sub", "role", "exp"]},
        )
        return Principal(sub=claims["sub"], actor=Actor(claims["role"]))
    except jwt.PyJWTError as e:
        raise HTTPException(status_code=401, detail=f"Invalid token: {e}")
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid token: unknown role")


def get_principal(
    creds: Annotated[Optional[HTTPAuthorizationCredentials], Depends(bearer)],
) -> Principal:
    if creds is None:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return decode_token(creds.credentials)


def get_principal_optional(
    creds: Annotated[Optional[HTTPAuthorizationCredentials], Depends(bearer)],
) -> Optional[Principal]:
    if creds is None:
        return None
    return decode_token(creds.credentials)


def require_roles(*actors: Actor):
    allowed = frozenset(actors)

    def _dep(principal: Annotated[Principal, Depends(get_principal)]) -> Principal:
        if principal.actor not in allowed:
            raise HTTPException(status_code=403, detail="Forbidden")
        return principal

    return _dep
