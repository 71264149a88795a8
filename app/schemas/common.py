"""
Common Schemas
==============

Shared Pydantic schemas used across the application.
"""

from typing import Optional

from pydantic import BaseModel


class ErrorDetail(BaseModel):
    code: str
    message: str
    field: Optional[str] = None


class ErrorResponse(BaseModel):
    """Body of every non-2xx response (see ``app.core.errors``)."""

    success: bool = False
    error: ErrorDetail
