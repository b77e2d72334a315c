from __future__ import annotations

import hmac
import logging

from fastapi import Header, HTTPException, status

from credit_ledger.core.config import settings

logger = logging.getLogger(__name__)


def require_internal_token(x_internal_token: str | None = Header(None)) -> None:
    """
    Shared-secret auth for service-to-service calls (workflow executor, billing webhooks).

    Outside prod the check is skipped while INTERNAL_API_TOKEN is unset so local
    tooling can call /deduct and /add directly.
    """
    if not settings.INTERNAL_API_TOKEN:
        if settings.is_prod:
            raise HTTPException(status_code=500, detail="Server missing INTERNAL_API_TOKEN")
        return

    if not x_internal_token or not hmac.compare_digest(x_internal_token, settings.INTERNAL_API_TOKEN):
        logger.warning("Rejected internal credits call with missing or invalid token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
