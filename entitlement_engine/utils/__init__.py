"""Small helpers shared by the services."""

from entitlement_engine.utils.helpers import utc_now
from entitlement_engine.utils.validators import validate_optional_uuid, validate_uuid

__all__ = ["utc_now", "validate_uuid", "validate_optional_uuid"]
