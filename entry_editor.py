"""Per-date journal entry: field values keyed by (groupId, fieldId, fieldTypeId)."""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List

from quickjournal.dates import Clock, is_valid_date, minutes_since_midnight, timestamp, today_str
from quickjournal.field_kinds import CHECK, TIME_SELECT
from sync_boundary import SyncError


logger = logging.getLogger("quickjournal.entry")

Issue = Dict[str, Any]

DEFAULT_TIME_STEP = 30


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def empty_entry(date: str, clock: Clock | None = None) -> dict:
    now = timestamp(clock)
    return {"date": date, "values": [], "createdAt": now, "updatedAt": now}


def _value_index(values: List[dict], field_id: str, field_type_id: str) -> int | None:
    for index, item in enumerate(values):
        if item.get("fieldId") == field_id and item.get("fieldTypeId") == field_type_id:
            return index
    return None


def _numeric(value: Any) -> int | float:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return 0
        return int(parsed) if parsed.is_integer() else parsed
    return 0


def upsert_value(
    entry: dict,
    group_id: str,
    field_id: str,
    field_type_id: str,
    value: Any,
    stamp: str,
    filled: bool = True,
) -> None:
    values = entry.setdefault("values", [])
    index = _value_index(values, field_id, field_type_id)
    if index is None:
        values.append(
            {
                "groupId": group_id,
                "fieldId": field_id,
                "fieldTypeId": field_type_id,
                "value": value,
                "filled": filled,
                "createdAt": stamp,
                "updatedAt": stamp,
            }
        )
        return
    values[index].update({"value": value, "filled": filled, "updatedAt": stamp})


def _time_step(field_type: dict) -> int:
    step = (field_type.get("dataOptions") or {}).get("step")
    step = _numeric(step) if step is not None else DEFAULT_TIME_STEP
    return int(step) if step and step > 0 else DEFAULT_TIME_STEP


def apply_action_to_entry(
    entry: dict,
    action: dict,
    field: dict,
    group_id: str,
    value: Any = None,
    clock: Clock | None = None,
) -> dict:
    """Return a copy of ``entry`` with one registration of ``action`` applied.

    A custom option stores ``value``; an increment option adds to the current
    number (a new value starts at the increment). The field's CHECK value is
    set to true, and every TIME_SELECT type on the field records the current
    minute of the day rounded down to its step, unless the action just wrote a
    custom value into it.
    """
    out = copy.deepcopy(entry)
    out.setdefault("values", [])
    stamp = timestamp(clock)
    field_id = action["fieldId"]
    field_types = field.get("fieldTypes") or []
    option = action.get("option")
    custom_type_id = None

    if option:
        type_id = option["fieldTypeId"]
        index = _value_index(out["values"], field_id, type_id)
        increment = option.get("increment")
        if option.get("isCustom") and value is not None:
            upsert_value(out, group_id, field_id, type_id, value, stamp)
            custom_type_id = type_id
        elif index is not None and increment is not None:
            current = _numeric(out["values"][index].get("value"))
            upsert_value(out, group_id, field_id, type_id, current + increment, stamp)
        elif index is None:
            upsert_value(out, group_id, field_id, type_id, increment if increment is not None else 1, stamp)

    for field_type in field_types:
        if field_type.get("kind") == CHECK:
            upsert_value(out, group_id, field_id, field_type["id"], True, stamp)
        elif field_type.get("kind") == TIME_SELECT and field_type["id"] != custom_type_id:
            step = _time_step(field_type)
            minutes = minutes_since_midnight(clock) // step * step
            upsert_value(out, group_id, field_id, field_type["id"], minutes, stamp)

    out["updatedAt"] = stamp
    return out


class EntryEditor:
    def __init__(self, boundary: Any, *, clock: Clock | None = None) -> None:
        self._boundary = boundary
        self._clock = clock
        self._entry: dict | None = None
        self._date: str | None = None
        self._has_changes = False
        self._rev = 0
        self._seq = 0
        self.last_error: Issue | None = None

    @property
    def entry(self) -> dict | None:
        return copy.deepcopy(self._entry)

    @property
    def date(self) -> str | None:
        return self._date

    @property
    def has_changes(self) -> bool:
        return self._has_changes

    def _fail(self, code: str, message: str, path: str | None = None, detail: dict | None = None) -> None:
        self.last_error = _issue(code, message, path, detail)
        logger.info("entry_op_rejected code=%s message=%s", code, message)

    def value_for(self, field_id: str, field_type_id: str) -> Any:
        if self._entry is None:
            return None
        values = self._entry.get("values") or []
        index = _value_index(values, field_id, field_type_id)
        return values[index].get("value") if index is not None else None

    def update_value(
        self,
        group_id: str,
        field_id: str,
        field_type_id: str,
        value: Any,
        filled: bool = True,
    ) -> bool:
        if self._entry is None:
            self._fail("NO_ENTRY", "No entry is loaded")
            return False
        upsert_value(self._entry, group_id, field_id, field_type_id, value, timestamp(self._clock), filled)
        self._has_changes = True
        self._rev += 1
        self._seq += 1
        self.last_error = None
        return True

    async def refresh_entry(self, date: str | None = None) -> dict | None:
        target = today_str(self._clock) if date is None else date
        if not is_valid_date(target):
            self._fail("INVALID_DATE", "Invalid date format. Expected YYYY-MM-DD.", "date")
            return None
        self._seq += 1
        seq = self._seq
        try:
            raw = await self._boundary.fetch_entry(target)
        except SyncError as exc:
            if not exc.not_found:
                self._fail("SYNC_FAILED", "Failed to load journal entry", detail={"status": exc.status, "error": exc.message})
                logger.warning("entry_fetch_failed date=%s status=%s", target, exc.status)
                return None
            raw = empty_entry(target, self._clock)
        if seq != self._seq:
            self._fail("STALE_RESPONSE", "A newer request or edit superseded this fetch", detail={"date": target})
            return None
        entry = copy.deepcopy(raw) if isinstance(raw, dict) else empty_entry(target, self._clock)
        entry.setdefault("date", target)
        if not isinstance(entry.get("values"), list):
            entry["values"] = []
        self._entry = entry
        self._date = target
        self._has_changes = False
        self.last_error = None
        logger.info("entry_loaded date=%s values=%s", target, len(entry["values"]))
        return copy.deepcopy(entry)

    async def save_entry(self) -> dict | None:
        if self._entry is None:
            self._fail("NO_ENTRY", "No entry is loaded")
            return None
        if not self._has_changes:
            return copy.deepcopy(self._entry)
        rev = self._rev
        try:
            saved = await self._boundary.save_entry(copy.deepcopy(self._entry))
        except SyncError as exc:
            self._fail("SYNC_FAILED", "Failed to save journal entry", detail={"status": exc.status, "error": exc.message})
            logger.warning("entry_save_failed date=%s status=%s", self._date, exc.status)
            return None
        self.last_error = None
        if rev != self._rev:
            logger.info("entry_save_kept_local_edits date=%s", self._date)
            return copy.deepcopy(saved)
        self._entry = copy.deepcopy(saved)
        self._has_changes = False
        logger.info("entry_saved date=%s", self._date)
        return copy.deepcopy(saved)
