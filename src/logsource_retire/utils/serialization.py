"""JSON serialization utilities."""

from __future__ import annotations

import dataclasses
import datetime
import enum
import json

from logsource_retire.utils.time import to_utc_iso


def json_default(obj: object) -> object:
    """JSON serializer for objects not serializable by default json code."""
    if isinstance(obj, datetime.datetime):
        return to_utc_iso(obj)
    if isinstance(obj, datetime.date):
        return obj.isoformat()
    if isinstance(obj, enum.Enum):
        return obj.value
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    return str(obj)


def canonical_json(payload: object) -> str:
    """Stable JSON text used for checksums."""
    return json.dumps(
        payload,
        default=json_default,
        ensure_ascii=True,
        sort_keys=True,
        separators=(",", ":"),
    )
