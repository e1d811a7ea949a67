"""Structure hashing utilities."""

from __future__ import annotations

import hashlib
from typing import Any

from .canonical_json import canonical_bytes


def structure_hash(groups: Any) -> str:
    """Return the canonical SHA-256 hash for a materialized group list."""
    digest = hashlib.sha256(canonical_bytes(groups)).hexdigest()
    return f"sha256:{digest}"
