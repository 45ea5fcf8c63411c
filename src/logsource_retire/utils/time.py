"""Time helpers."""

from __future__ import annotations

from datetime import datetime, timezone

# Fixed-width so that stored timestamps compare chronologically as strings.
_ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def to_utc_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_ISO_FORMAT)


def utc_now_iso() -> str:
    return to_utc_iso(utc_now())


def parse_utc_iso(value: str) -> datetime:
    """Parse a stored or API timestamp into an aware UTC datetime.

    Accepts the fixed-width storage format as well as the looser RFC 3339
    strings returned by the SIEM admin API (``Z`` suffix, optional fraction).
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
