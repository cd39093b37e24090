"""
Input Validators
================

Validation helpers for client-supplied purchase fields.
"""

from typing import Optional
import uuid

from entitlement_engine.core.errors import ValidationInputError


def validate_uuid(uuid_str: str, field_name: str = "id") -> str:
    """
    Validate UUID format and return it in canonical lowercase form.

    Raises:
        ValidationInputError: If the value is not a UUID
    """
    try:
        return str(uuid.UUID(uuid_str))
    except (TypeError, ValueError):
        raise ValidationInputError(
            message="Invalid UUID format",
            field=field_name,
        )


def validate_optional_uuid(value: Optional[str], field_name: str) -> Optional[str]:
    """Like ``validate_uuid`` but lets empty values through as None."""
    if not value:
        return None
    return validate_uuid(value, field_name)
