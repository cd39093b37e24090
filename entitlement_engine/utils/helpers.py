"""Time helpers."""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Timezone-aware current time; every entitlement comparison uses UTC."""
    return datetime.now(timezone.utc)
