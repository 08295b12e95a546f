# SPDX-License-Identifier: Apache-2.0
"""UTC timestamps at millisecond precision, so hashed ISO strings survive a DB round trip."""
from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Timezone-aware UTC now, truncated to milliseconds."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def iso_z(dt: datetime) -> str:
    """ISO 8601 with milliseconds and Z suffix, e.g. 2025-01-01T12:00:00.000Z.

    Naive values are read as UTC; the store may hand them back without tzinfo.
    """
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"
