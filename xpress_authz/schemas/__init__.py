# This project was developed with assistance from AI tools.
"""Shared schema components."""

from datetime import UTC, datetime
from typing import Annotated

from pydantic import AfterValidator


def _as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so comparisons never mix naive and aware."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


UTCDateTime = Annotated[datetime, AfterValidator(_as_utc)]
