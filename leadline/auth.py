"""
Bearer-token authentication for the jobs API (HS256 JWT, ``sub`` = user id).
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from fastapi import Request
from jose import JWTError, jwt

from leadline.errors import NotAuthenticated

log = structlog.get_logger(__name__)

JWT_ALGORITHM = "HS256"
JWT_EXPIRE_DAYS = 30
DEV_USER_HEADER = "x-user-id"


class AuthManager:
    """Verifies access tokens issued by the account service."""

    def __init__(self, jwt_secret: str, allow_header_fallback: bool = False):
        self.jwt_secret = jwt_secret
        self.allow_header_fallback = allow_header_fallback

    def create_access_token(self, user_id: str, expires_in: timedelta = timedelta(days=JWT_EXPIRE_DAYS)) -> str:
        """Create a signed token. Used by the CLI and tests."""
        now = datetime.now(timezone.utc)
        payload = {"sub": str(user_id), "iat": now, "exp": now + expires_in}
        return jwt.encode(payload, self.jwt_secret, algorithm=JWT_ALGORITHM)

    def verify_access_token(self, token: str) -> Optional[dict]:
        """Verify and decode JWT. Returns payload or None."""
        if not self.jwt_secret:
            return None
        try:
            return jwt.decode(token, self.jwt_secret, algorithms=[JWT_ALGORITHM])
        except JWTError:
            return None

    def get_current_user_id(self, request: Request) -> Optional[str]:
        header = request.headers.get("authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            payload = self.verify_access_token(token.strip())
            if payload and payload.get("sub"):
                return str(payload["sub"])
            log.warning("access_token_rejected", path=request.url.path)
            return None

        if self.allow_header_fallback:
            user_id = request.headers.get(DEV_USER_HEADER, "").strip()
            if user_id:
                return user_id
        return None

    def require_auth(self, request: Request) -> str:
        """Extract user ID or raise 401."""
        user_id = self.get_current_user_id(request)
        if user_id is None:
            raise NotAuthenticated("Not authenticated")
        return user_id
