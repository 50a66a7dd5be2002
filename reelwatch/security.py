from __future__ import annotations

import structlog
from fastapi import Header, HTTPException, Request, status

logger = structlog.get_logger(__name__)


class CredentialStatus:
    """Caller-visible "credential present" flag for the generation backend."""

    def __init__(self, present: bool = False) -> None:
        self._present = present
        self.reason: str | None = None

    @property
    def present(self) -> bool:
        return self._present

    def mark_present(self) -> None:
        self._present = True
        self.reason = None

    def invalidate(self, reason: str | None = None) -> None:
        if self._present:
            logger.warning("credential.invalidated", reason=reason)
        self._present = False
        self.reason = reason


def require_api_key(
    request: Request,
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> str | None:
    """
    If REELWATCH_API_KEY is configured, enforce the X-API-Key header.
    If not set, allow requests without authentication.
    """
    settings = request.app.state.settings
    if settings.api_key is None:
        return None
    if x_api_key != settings.api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing API key")
    return x_api_key
