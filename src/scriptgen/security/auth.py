from __future__ import annotations

"""Authentication for the generation endpoints.

Two ways in:
- a JWT bearer token (HS256) carrying ``sub``, ``name`` and ``roles``
- the shared ``X-CLI-API-Key`` secret for non-interactive callers, which
  authenticates as the fixed ``cli-user`` identity

Env vars:
- JWT_SECRET (required in prod; default for dev)
- JWT_EXPIRES_MIN (default 60)
- CLI_API_KEY (unset disables CLI access)
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import logging
import os
import secrets

import jwt
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

logger = logging.getLogger("scriptgen.auth")
bearer_scheme = HTTPBearer(auto_error=False)

CLI_USER_ID = "cli-user"


@dataclass
class JwtConfig:
    secret: str
    algorithm: str = "HS256"
    expires_min: int = 60

    @staticmethod
    def from_env() -> "JwtConfig":
        secret = os.getenv("JWT_SECRET", "dev-secret-change-me")
        expires = int(os.getenv("JWT_EXPIRES_MIN", "60"))
        return JwtConfig(secret=secret, expires_min=expires)


class User(BaseModel):
    user_id: str
    username: str = ""
    roles: list[str] = []

    @property
    def is_sponsor(self) -> bool:
        return "sponsor" in self.roles


def create_access_token(user: User, cfg: Optional[JwtConfig] = None) -> str:
    cfg = cfg or JwtConfig.from_env()
    now = datetime.now(timezone.utc)
    exp = now + timedelta(minutes=cfg.expires_min)
    payload = {
        "sub": user.user_id,
        "name": user.username,
        "roles": user.roles,
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
    }
    return jwt.encode(payload, cfg.secret, algorithm=cfg.algorithm)


def decode_token(token: str, cfg: Optional[JwtConfig] = None) -> User:
    cfg = cfg or JwtConfig.from_env()
    try:
        data = jwt.decode(token, cfg.secret, algorithms=[cfg.algorithm])
        return User(user_id=str(data["sub"]), username=data.get("name", ""), roles=list(data.get("roles", [])))
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except Exception:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def cli_key_matches(provided: Optional[str]) -> bool:
    expected = os.getenv("CLI_API_KEY")
    if not provided or not expected:
        return False
    return secrets.compare_digest(provided.strip().lower(), expected.strip().lower())


def get_current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    x_cli_api_key: Optional[str] = Header(default=None, alias="X-CLI-API-Key"),
) -> User:
    """Resolve the caller from the CLI key or a bearer token; 401 otherwise."""

    if cli_key_matches(x_cli_api_key):
        return User(user_id=CLI_USER_ID, username="CLI", roles=["cli"])
    if x_cli_api_key:
        logger.warning("cli_key_rejected")
    if creds is None or not creds.scheme or creds.scheme.lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return decode_token(creds.credentials)
