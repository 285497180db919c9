"""Deterministic identity for sleep periods.

A period's id is derived from the source that recorded it and its start
time, so re-ingesting the same samples always lands on the same record:

    period id = sha256("{source}-{ISO-8601 start}")
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone


def iso8601_utc(moment: datetime) -> str:
    """Format as UTC ISO-8601 with second precision and a ``Z`` suffix."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def stable_period_id(source: str, start: datetime) -> str:
    """Compute the stable identifier of a period.

    Args:
        source: Bundle identifier of the app that wrote the samples.
        start:  Start of the period.

    Returns:
        64-character SHA-256 hex digest.
    """
    canonical = f"{source}-{iso8601_utc(start)}"
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
