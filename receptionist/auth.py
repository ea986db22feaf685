"""Operator access to persisted calls and alerts.

The admin routes expose caller transcripts, so they sit behind a static
bearer token. ``AdminTokenGuard`` is built from settings once per app and
injected as a FastAPI dependency; tests build their own.

When no token is configured the guard is open only if ``allow_open`` is
set (``DEBUG=true``); otherwise every request is refused with 403 so a
missing key never exposes call data.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from receptionist.config import Settings

log = logging.getLogger("receptionist.auth")

_bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AdminTokenGuard:
    api_key: str = ""
    allow_open: bool = False

    @classmethod
    def from_settings(cls, cfg: Settings) -> "AdminTokenGuard":
        return cls(api_key=cfg.admin_api_key, allow_open=cfg.debug)

    @property
    def is_open(self) -> bool:
        return not self.api_key and self.allow_open

    async def __call__(
        self,
        request: Request,
        credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    ) -> None:
        if self.is_open:
            return
        if not self.api_key:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Call data is locked: ADMIN_API_KEY is not configured.",
            )
        if credentials is None or not secrets.compare_digest(credentials.credentials, self.api_key):
            client = request.client.host if request.client else "unknown"
            log.warning("Refused %s %s from %s", request.method, request.url.path, client)
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or missing admin token.",
                headers={"WWW-Authenticate": "Bearer"},
            )
