from __future__ import annotations

from datetime import datetime, timedelta, timezone


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def now_utc_iso() -> str:
    """Return an RFC 3339/ISO timestamp in UTC with millisecond precision."""
    return to_utc_iso(now_utc())


def to_utc_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def utc_iso_after(seconds: float, *, base: datetime | None = None) -> str:
    return to_utc_iso((base or now_utc()) + timedelta(seconds=seconds))


def utc_iso_before(seconds: float, *, base: datetime | None = None) -> str:
    return to_utc_iso((base or now_utc()) - timedelta(seconds=seconds))
