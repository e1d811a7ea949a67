"""FieldType kinds and the typed ``dataOptions`` record each kind carries.

Every kind in ``FIELD_TYPE_KINDS`` has exactly one options class registered in
``_OPTION_TYPES``; the module refuses to import otherwise, so adding a kind
means adding its options class here before anything else can use it.

Options are parsed in two modes. ``strict=True`` is used for editor input and
raises ``FieldKindError`` on unknown keys or bad values. ``strict=False`` is
used when loading trees from the backend: unknown keys are dropped and a record
that fails its checks falls back to the kind's defaults.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, fields
from typing import Any, Callable, ClassVar, Dict, Tuple, Union


CHECK = "CHECK"
NUMBER = "NUMBER"
NUMBER_NAVIGATION = "NUMBER_NAVIGATION"
TIME_SELECT = "TIME_SELECT"
RANGE = "RANGE"
SEVERITY = "SEVERITY"
CUSTOM_SCALE = "CUSTOM_SCALE"

FIELD_TYPE_KINDS: Tuple[str, ...] = (
    CHECK,
    NUMBER,
    NUMBER_NAVIGATION,
    TIME_SELECT,
    RANGE,
    SEVERITY,
    CUSTOM_SCALE,
)

# Kinds a quick action can write a value into.
ACTION_VALUE_KINDS = frozenset({NUMBER, NUMBER_NAVIGATION, TIME_SELECT})

Number = Union[int, float]


@dataclass
class FieldKindError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


def _as_number(value: Any) -> Number:
    if isinstance(value, bool):
        raise TypeError("boolean is not a number")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError("number must be finite")
        return int(value) if value.is_integer() else value
    if isinstance(value, str):
        parsed = float(value.strip())
        if not math.isfinite(parsed):
            raise ValueError("number must be finite")
        return int(parsed) if parsed.is_integer() else parsed
    raise TypeError("expected a number")


def _as_optional_number(value: Any) -> Number | None:
    if value is None or value == "":
        return None
    return _as_number(value)


def _as_int(value: Any) -> int:
    number = _as_number(value)
    if not isinstance(number, int):
        raise ValueError("expected a whole number")
    return number


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise TypeError("expected a string")
    return value.strip()


def _as_labels(value: Any) -> Tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        raise TypeError("labels must be a list")
    labels = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ValueError("labels must be non-empty strings")
        labels.append(item.strip())
    return tuple(labels)


class _Options:
    kind: ClassVar[str]
    _coercers: ClassVar[Dict[str, Callable[[Any], Any]]] = {}

    def _check(self) -> None:
        return None

    def to_dict(self) -> dict:
        out: dict = {}
        for f in fields(self):  # type: ignore[arg-type]
            value = getattr(self, f.name)
            if value is None:
                continue
            out[f.name] = list(value) if isinstance(value, tuple) else value
        return out

    @classmethod
    def from_dict(cls, raw: Any, strict: bool = True) -> "_Options":
        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            if strict:
                raise FieldKindError("INVALID_DATA_OPTIONS", "dataOptions must be an object", "dataOptions")
            raw = {}
        values: Dict[str, Any] = {}
        for key, value in raw.items():
            coercer = cls._coercers.get(key)
            if coercer is None:
                if strict:
                    raise FieldKindError(
                        "INVALID_DATA_OPTIONS",
                        f"unknown option '{key}' for {cls.kind}",
                        f"dataOptions.{key}",
                    )
                continue
            try:
                values[key] = coercer(value)
            except (TypeError, ValueError) as exc:
                if strict:
                    raise FieldKindError("INVALID_DATA_OPTIONS", f"{key}: {exc}", f"dataOptions.{key}") from exc
        options = cls(**values)
        try:
            options._check()
        except ValueError as exc:
            if strict:
                raise FieldKindError("INVALID_DATA_OPTIONS", str(exc), "dataOptions") from exc
            return cls()
        return options


@dataclass(frozen=True)
class CheckOptions(_Options):
    kind: ClassVar[str] = CHECK


@dataclass(frozen=True)
class NumberOptions(_Options):
    kind: ClassVar[str] = NUMBER
    _coercers: ClassVar[Dict[str, Callable[[Any], Any]]] = {
        "min": _as_optional_number,
        "max": _as_optional_number,
        "unit": _as_text,
    }

    min: Number | None = 0
    max: Number | None = None
    unit: str = ""

    def _check(self) -> None:
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError("min must not exceed max")


@dataclass(frozen=True)
class NumberNavigationOptions(NumberOptions):
    kind: ClassVar[str] = NUMBER_NAVIGATION


@dataclass(frozen=True)
class TimeSelectOptions(_Options):
    kind: ClassVar[str] = TIME_SELECT
    _coercers: ClassVar[Dict[str, Callable[[Any], Any]]] = {"step": _as_int}

    step: int = 30

    def _check(self) -> None:
        if not 1 <= self.step <= 1440:
            raise ValueError("step must be between 1 and 1440 minutes")


@dataclass(frozen=True)
class RangeOptions(_Options):
    kind: ClassVar[str] = RANGE
    _coercers: ClassVar[Dict[str, Callable[[Any], Any]]] = {
        "min": _as_number,
        "max": _as_number,
        "step": _as_number,
        "unit": _as_text,
    }

    min: Number = 0
    max: Number = 100
    step: Number = 1
    unit: str = ""

    def _check(self) -> None:
        if self.min >= self.max:
            raise ValueError("min must be lower than max")
        if self.step <= 0:
            raise ValueError("step must be positive")


@dataclass(frozen=True)
class SeverityOptions(_Options):
    kind: ClassVar[str] = SEVERITY


@dataclass(frozen=True)
class CustomScaleOptions(_Options):
    kind: ClassVar[str] = CUSTOM_SCALE
    _coercers: ClassVar[Dict[str, Callable[[Any], Any]]] = {"labels": _as_labels}

    labels: Tuple[str, ...] = ("Default",)

    def _check(self) -> None:
        if not self.labels:
            raise ValueError("at least one label is required")


_OPTION_TYPES: Dict[str, type] = {
    cls.kind: cls
    for cls in (
        CheckOptions,
        NumberOptions,
        NumberNavigationOptions,
        TimeSelectOptions,
        RangeOptions,
        SeverityOptions,
        CustomScaleOptions,
    )
}

_unmatched = set(FIELD_TYPE_KINDS).symmetric_difference(_OPTION_TYPES)
if _unmatched:
    raise RuntimeError(f"field kinds without an options type: {sorted(_unmatched)}")


def is_valid_kind(kind: Any) -> bool:
    return isinstance(kind, str) and kind in _OPTION_TYPES


def parse_data_options(kind: str, raw: Any, strict: bool = True) -> _Options:
    cls = _OPTION_TYPES.get(kind) if isinstance(kind, str) else None
    if cls is None:
        raise FieldKindError("INVALID_KIND", f"unknown field type kind {kind!r}", "kind")
    return cls.from_dict(raw, strict=strict)


def default_data_options(kind: str) -> _Options:
    return parse_data_options(kind, None)


def is_action_value_kind(kind: str) -> bool:
    return kind in ACTION_VALUE_KINDS
