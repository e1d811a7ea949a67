"""Date helpers shared by the editors and the registry."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Callable


Clock = Callable[[], datetime]

DATE_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])-(0[1-9]|[12]\d|3[01])$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(now: datetime) -> datetime:
    # Naive datetimes from injected clocks are taken as UTC already.
    if now.tzinfo is None:
        return now
    return now.astimezone(timezone.utc)


def is_valid_date(value: object) -> bool:
    return isinstance(value, str) and DATE_RE.fullmatch(value) is not None


def today_str(clock: Clock | None = None) -> str:
    return _as_utc((clock or utc_now)()).strftime("%Y-%m-%d")


def timestamp(clock: Clock | None = None) -> str:
    return _as_utc((clock or utc_now)()).strftime("%Y-%m-%dT%H:%M:%SZ")


def minutes_since_midnight(clock: Clock | None = None) -> int:
    now = _as_utc((clock or utc_now)())
    return now.hour * 60 + now.minute
