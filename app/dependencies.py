"""
Common Dependencies
===================

Shared dependencies used across the application.
"""

import hmac
import logging
from typing import Annotated, Optional

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import AuthenticationError, ErrorCodes
from app.db.session import get_db

logger = logging.getLogger(__name__)

# Database session dependency
DBSession = Annotated[AsyncSession, Depends(get_db)]

# Bearer scheme for service-to-service calls
security = HTTPBearer(auto_error=False)


def _matches(supplied: Optional[str], expected: str) -> bool:
    """Constant-time comparison; an unset secret never matches."""
    if not expected or not supplied:
        return False
    return hmac.compare_digest(supplied.encode(), expected.encode())


async def verify_service_key(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> None:
    """
    Require ``Authorization: Bearer <INTERNAL_API_KEY>``.

    Used by the webhook listener and other internal callers.

    Raises:
        AuthenticationError: If the key is missing or wrong
    """
    token = credentials.credentials if credentials else None
    if not _matches(token, settings.INTERNAL_API_KEY):
        logger.warning("Rejected service request with invalid API key")
        raise AuthenticationError(message="Invalid service credentials")


async def verify_cron_secret(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    x_cron_secret: Annotated[Optional[str], Header(alias="X-Cron-Secret")] = None,
) -> None:
    """
    Require the cron secret, as ``X-Cron-Secret`` or a bearer token.

    Raises:
        AuthenticationError: If neither carries ``CRON_SECRET``
    """
    token = credentials.credentials if credentials else None
    if _matches(x_cron_secret, settings.CRON_SECRET) or _matches(token, settings.CRON_SECRET):
        return
    logger.warning("Rejected cron request with invalid secret")
    raise AuthenticationError(
        code=ErrorCodes.AUTH_INVALID_CRON_SECRET,
        message="Invalid cron secret",
    )
