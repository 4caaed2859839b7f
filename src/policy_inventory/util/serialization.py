from __future__ import annotations

import json
from dataclasses import asdict, is_dataclass
from datetime import datetime
from enum import Enum
from typing import Any

REDACTED_VALUE = "<redacted>"
# Matched against the end of the key: passwordMinimumLength is a setting.
SENSITIVE_KEY_SUFFIXES = (
    "password",
    "secret",
    "token",
    "privatekey",
    "private_key",
    "presharedkey",
)


def is_sensitive_key(key: Any) -> bool:
    if not isinstance(key, str):
        return False
    return key.lower().endswith(SENSITIVE_KEY_SUFFIXES)


def is_secret_field(key: Any, value: Any) -> bool:
    """
    True when key names a secret and value could hold one. Booleans and numbers
    under a secret-like key (requirePassword: true) are settings, not secrets.
    """
    if value is None or isinstance(value, (bool, int, float)):
        return False
    return is_sensitive_key(key)


def sanitize_for_json(value: Any) -> Any:
    """
    Convert common non-JSON types to serializable forms and redact sensitive fields.
    Sets are emitted sorted so output stays deterministic.
    """
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if is_secret_field(k, v):
                out[k] = REDACTED_VALUE
            else:
                out[k] = sanitize_for_json(v)
        return out
    if isinstance(value, (set, frozenset)):
        return sorted((sanitize_for_json(v) for v in value), key=str)
    if isinstance(value, (list, tuple)):
        return [sanitize_for_json(v) for v in value]
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return sanitize_for_json(to_dict())
    if is_dataclass(value) and not isinstance(value, type):
        return sanitize_for_json(asdict(value))
    return value


def stable_json_dumps(obj: Any, *, indent: int | None = None) -> str:
    """
    Dump JSON with sort_keys=True and fixed separators to ensure stable output.
    """
    if indent is not None:
        return json.dumps(obj, sort_keys=True, indent=indent, ensure_ascii=False)
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
