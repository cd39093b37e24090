"""
Common Schemas
==============

Shared Pydantic schemas used across the application.
"""

from typing import Optional

from pydantic import BaseModel


class ErrorDetail(BaseModel):
    """Error detail structure."""

    code: str
    message: str
    field: Optional[str] = None


class ErrorResponse(BaseModel):
    """Standard error response."""

    success: bool = False
    error: ErrorDetail


class SuccessResponse(BaseModel):
    """Bare acknowledgement."""

    success: bool = True
