"""Keep credentials out of log output."""

from __future__ import annotations

from typing import Any

# Substring match, case-insensitive.
SENSITIVE_KEY_MARKERS: tuple[str, ...] = (
    "password",
    "passwd",
    "secret",
    "token",
    "apikey",
    "api_key",
    "credential",
    "authorization",
)


def is_sensitive_key(key: object) -> bool:
    lowered = str(key).lower()
    return any(marker in lowered for marker in SENSITIVE_KEY_MARKERS)


def redact_sensitive_fields(value: Any, mask: str = "***", max_depth: int = 20) -> Any:
    """Copy of *value* with credential-like entries replaced by *mask*.

    Anything nested deeper than ``max_depth`` is masked whole.
    """

    def walk(node: Any, depth: int) -> Any:
        if depth >= max_depth:
            return mask
        if isinstance(node, dict):
            return {
                key: mask if is_sensitive_key(key) else walk(item, depth + 1)
                for key, item in node.items()
            }
        if isinstance(node, (list, tuple)):
            return [walk(item, depth + 1) for item in node]
        return node

    return walk(value, 0)


def mask_secret(secret: str, visible: int = 4) -> str:
    """``****abcd`` style hint for a configured secret."""
    if not secret:
        return "<unset>"
    if len(secret) <= visible * 2:
        return "*" * len(secret)
    return "*" * 4 + secret[-visible:]
