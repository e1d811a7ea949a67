"""quickjournal kernel utilities."""

from .canonical_json import CanonicalTypeError, canonical_dumps
from .dates import is_valid_date, today_str
from .field_kinds import FIELD_TYPE_KINDS, FieldKindError, parse_data_options
from .structure_hash import structure_hash

__all__ = [
    "CanonicalTypeError",
    "FIELD_TYPE_KINDS",
    "FieldKindError",
    "canonical_dumps",
    "is_valid_date",
    "parse_data_options",
    "structure_hash",
    "today_str",
]
