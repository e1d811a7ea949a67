"""Deterministic canonical JSON serialization for journal payloads."""

from __future__ import annotations

import json
import math
from typing import Any


class CanonicalTypeError(TypeError):
    """Raised when a payload holds a value the journal wire format cannot carry."""


def _check(obj: Any, path: str = "$") -> None:
    if isinstance(obj, dict):
        for key, value in obj.items():
            if not isinstance(key, str):
                raise CanonicalTypeError(f"Unsupported key type at {path}: {type(key).__name__}")
            _check(value, f"{path}.{key}")
        return
    if isinstance(obj, (list, tuple)):
        for idx, item in enumerate(obj):
            _check(item, f"{path}[{idx}]")
        return
    if obj is None or isinstance(obj, (str, bool, int)):
        return
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise ValueError(f"Non-finite float at {path}: {obj!r}")
        return
    raise CanonicalTypeError(f"Unsupported type at {path}: {type(obj).__name__}")


def canonical_dumps(obj: Any) -> str:
    """Serialize a structure, entry or action payload to canonical JSON.

    Keys are sorted recursively, list and tuple order is kept, non-ASCII text
    is written as-is and no whitespace is emitted. NaN and infinities are
    rejected because the backend stores numbers as JSON.
    """
    _check(obj)
    return json.dumps(
        obj,
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
        allow_nan=False,
    )


def canonical_bytes(obj: Any) -> bytes:
    return canonical_dumps(obj).encode("utf-8")
