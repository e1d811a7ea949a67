"""Normalized journal structure tree: groups, fields and field types.

Nodes live in flat id-keyed maps with parent back-references; sibling order is
kept as per-parent id lists and written back into each record's ``order`` after
every structural change. The nested Journal -> Group -> Field -> FieldType view
is only built on read (``groups()`` / ``to_journal()``).

The CHECK field type of each field is kept outside the reorderable id list and
is always materialized last.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Tuple

from quickjournal.dates import Clock, timestamp, today_str
from quickjournal.field_kinds import CHECK, FieldKindError, parse_data_options


CHECK_TYPE_ORDER = 10
DEFAULT_GROUP_NAME = "My Journal"

_GROUP_CHILD_KEYS = ("fields",)
_FIELD_CHILD_KEYS = ("fieldTypes",)


@dataclass
class SchemaTreeError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


def _new_id() -> str:
    return str(uuid.uuid4())


def splice(ids: List[str], item_id: str, index: int | None) -> None:
    """Move (or insert) ``item_id`` to ``index`` clamped to the list; ``None`` appends."""
    if item_id in ids:
        ids.remove(item_id)
    if index is None:
        ids.append(item_id)
        return
    ids.insert(max(0, min(int(index), len(ids))), item_id)


def _sorted_children(items: list) -> list:
    keyed = []
    for pos, item in enumerate(items):
        order = item.get("order") if isinstance(item, dict) else None
        if isinstance(order, bool) or not isinstance(order, (int, float)):
            order = pos
        keyed.append((order, pos, item))
    keyed.sort(key=lambda entry: (entry[0], entry[1]))
    return [entry[2] for entry in keyed]


class SchemaTree:
    def __init__(
        self,
        structure_id: str | None = None,
        is_active: bool = True,
        effective_from: str | None = None,
        *,
        clock: Clock | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._clock = clock
        self._new_id = id_factory or _new_id
        now = timestamp(clock)
        self.structure_id = structure_id or self._new_id()
        self.is_active = is_active
        self.effective_from = effective_from or today_str(clock)
        self.created_at = now
        self.updated_at = now
        self.revision = 0
        self.repairs: List[str] = []

        self._groups: Dict[str, dict] = {}
        self._fields: Dict[str, dict] = {}
        self._field_types: Dict[str, dict] = {}
        self._group_ids: List[str] = []
        self._field_ids: Dict[str, List[str]] = {}
        self._type_ids: Dict[str, List[str]] = {}
        self._check_ids: Dict[str, str] = {}

    # -- construction -----------------------------------------------------

    @classmethod
    def default(cls, effective_from: str | None = None, *, clock: Clock | None = None, id_factory: Callable[[], str] | None = None) -> "SchemaTree":
        tree = cls(effective_from=effective_from, clock=clock, id_factory=id_factory)
        tree.add_group(DEFAULT_GROUP_NAME)
        tree.revision = 0
        return tree

    @classmethod
    def from_journal(cls, journal: Any, *, clock: Clock | None = None, id_factory: Callable[[], str] | None = None) -> "SchemaTree":
        """Build a tree from a backend Journal payload.

        Siblings are sorted by their stored ``order`` and re-densified. A field
        without a CHECK type gets one attached (recorded in ``repairs``); a
        field with two CHECK types is rejected.
        """
        if not isinstance(journal, dict):
            raise SchemaTreeError("INVALID_STRUCTURE", "structure must be an object", "$")
        groups = journal.get("groups")
        if not isinstance(groups, list):
            raise SchemaTreeError("INVALID_STRUCTURE", "groups must be a list", "groups")

        tree = cls(
            structure_id=journal.get("structureId"),
            is_active=journal.get("isActive", True) is not False,
            effective_from=journal.get("effectiveFrom"),
            clock=clock,
            id_factory=id_factory,
        )
        tree.created_at = journal.get("createdAt") or tree.created_at
        tree.updated_at = journal.get("updatedAt") or tree.updated_at

        for g_idx, raw_group in enumerate(_sorted_children(groups)):
            tree._load_group(raw_group, f"groups[{g_idx}]")
        tree._reindex(tree._group_ids, tree._groups, touch=False)
        tree.revision = 0
        return tree

    def _require_id(self, raw: Any, path: str, seen: Dict[str, Any]) -> str:
        if not isinstance(raw, dict):
            raise SchemaTreeError("INVALID_STRUCTURE", "node must be an object", path)
        node_id = raw.get("id")
        if not isinstance(node_id, str) or not node_id:
            raise SchemaTreeError("INVALID_STRUCTURE", "id must be a non-empty string", f"{path}.id")
        if node_id in seen:
            raise SchemaTreeError("INVALID_STRUCTURE", f"duplicate id {node_id}", f"{path}.id")
        return node_id

    def _load_group(self, raw: Any, path: str) -> None:
        group_id = self._require_id(raw, path, self._groups)
        record = {k: copy.deepcopy(v) for k, v in raw.items() if k not in _GROUP_CHILD_KEYS}
        record["name"] = raw.get("name") if isinstance(raw.get("name"), str) else ""
        record["collapsedByDefault"] = bool(raw.get("collapsedByDefault", False))
        record.setdefault("createdAt", self.created_at)
        record.setdefault("updatedAt", self.updated_at)
        self._groups[group_id] = record
        self._group_ids.append(group_id)
        self._field_ids[group_id] = []
        fields = raw.get("fields") or []
        if not isinstance(fields, list):
            raise SchemaTreeError("INVALID_STRUCTURE", "fields must be a list", f"{path}.fields")
        for f_idx, raw_field in enumerate(_sorted_children(fields)):
            self._load_field(group_id, raw_field, f"{path}.fields[{f_idx}]")
        self._reindex(self._field_ids[group_id], self._fields, touch=False)

    def _load_field(self, group_id: str, raw: Any, path: str) -> None:
        field_id = self._require_id(raw, path, self._fields)
        record = {k: copy.deepcopy(v) for k, v in raw.items() if k not in _FIELD_CHILD_KEYS}
        record["groupId"] = group_id
        record["name"] = raw.get("name") if isinstance(raw.get("name"), str) else ""
        record.setdefault("createdAt", self.created_at)
        record.setdefault("updatedAt", self.updated_at)
        self._fields[field_id] = record
        self._field_ids[group_id].append(field_id)
        self._type_ids[field_id] = []
        field_types = raw.get("fieldTypes") or []
        if not isinstance(field_types, list):
            raise SchemaTreeError("INVALID_STRUCTURE", "fieldTypes must be a list", f"{path}.fieldTypes")
        for t_idx, raw_type in enumerate(_sorted_children(field_types)):
            self._load_field_type(field_id, raw_type, f"{path}.fieldTypes[{t_idx}]")
        if field_id not in self._check_ids:
            self._attach_check(field_id)
            self.repairs.append(field_id)
        self._reindex_types(field_id, touch=False)

    def _load_field_type(self, field_id: str, raw: Any, path: str) -> None:
        type_id = self._require_id(raw, path, self._field_types)
        kind = raw.get("kind")
        try:
            options = parse_data_options(kind, raw.get("dataOptions"), strict=False)
        except FieldKindError as exc:
            raise SchemaTreeError("INVALID_STRUCTURE", exc.message, f"{path}.kind") from exc
        record = {k: copy.deepcopy(v) for k, v in raw.items() if k != "dataOptions"}
        record["fieldId"] = field_id
        record["options"] = options
        record.setdefault("createdAt", self.created_at)
        record.setdefault("updatedAt", self.updated_at)
        if kind == CHECK:
            if field_id in self._check_ids:
                raise SchemaTreeError("INVALID_STRUCTURE", "field has more than one CHECK type", path)
            self._check_ids[field_id] = type_id
        else:
            self._type_ids[field_id].append(type_id)
        self._field_types[type_id] = record

    # -- ordering ---------------------------------------------------------

    def _reindex(self, ids: List[str], records: Dict[str, dict], touch: bool = True) -> None:
        now = timestamp(self._clock) if touch else None
        for index, node_id in enumerate(ids):
            record = records[node_id]
            if record.get("order") != index:
                record["order"] = index
                if now:
                    record["updatedAt"] = now

    def _reindex_types(self, field_id: str, touch: bool = True) -> None:
        ids = self._type_ids[field_id]
        self._reindex(ids, self._field_types, touch=touch)
        check_id = self._check_ids.get(field_id)
        if check_id is not None:
            self._field_types[check_id]["order"] = max(CHECK_TYPE_ORDER, len(ids))

    def _touch(self, record: dict | None = None) -> None:
        now = timestamp(self._clock)
        if record is not None:
            record["updatedAt"] = now
        self.updated_at = now
        self.revision += 1

    # -- reads ------------------------------------------------------------

    def has_group(self, group_id: str) -> bool:
        return group_id in self._groups

    def has_field(self, field_id: str) -> bool:
        return field_id in self._fields

    def has_field_type(self, type_id: str) -> bool:
        return type_id in self._field_types

    def field_ids(self, group_id: str) -> List[str]:
        return list(self._field_ids.get(group_id, []))

    def field_type_ids(self, field_id: str) -> List[str]:
        """Ids of a field's types in materialized order (CHECK last)."""
        ids = list(self._type_ids.get(field_id, []))
        check_id = self._check_ids.get(field_id)
        if check_id is not None:
            ids.append(check_id)
        return ids

    def check_type_id(self, field_id: str) -> str | None:
        return self._check_ids.get(field_id)

    def field_kinds(self, field_id: str) -> List[str]:
        return [self._field_types[t]["kind"] for t in self.field_type_ids(field_id)]

    def field_of_type(self, type_id: str) -> str | None:
        record = self._field_types.get(type_id)
        return record["fieldId"] if record else None

    def get_group(self, group_id: str) -> dict | None:
        if group_id not in self._groups:
            return None
        return self._materialize_group(group_id)

    def get_field(self, field_id: str) -> dict | None:
        if field_id not in self._fields:
            return None
        return self._materialize_field(field_id)

    def get_field_type(self, type_id: str) -> dict | None:
        if type_id not in self._field_types:
            return None
        return self._materialize_field_type(type_id)

    def walk_fields(self) -> Iterator[Tuple[dict, dict]]:
        """Yield ``(group, field)`` pairs in tree order, both materialized."""
        for group_id in self._group_ids:
            group = self._groups[group_id]
            for field_id in self._field_ids[group_id]:
                yield copy.deepcopy(group), self._materialize_field(field_id)

    def counts(self) -> Dict[str, int]:
        return {
            "groups": len(self._groups),
            "fields": len(self._fields),
            "fieldTypes": len(self._field_types),
        }

    def _materialize_field_type(self, type_id: str) -> dict:
        record = self._field_types[type_id]
        out = {k: copy.deepcopy(v) for k, v in record.items() if k != "options"}
        out["dataOptions"] = record["options"].to_dict()
        return out

    def _materialize_field(self, field_id: str) -> dict:
        out = copy.deepcopy(self._fields[field_id])
        out["fieldTypes"] = [self._materialize_field_type(t) for t in self.field_type_ids(field_id)]
        return out

    def _materialize_group(self, group_id: str) -> dict:
        out = copy.deepcopy(self._groups[group_id])
        out["fields"] = [self._materialize_field(f) for f in self._field_ids[group_id]]
        return out

    def groups(self) -> List[dict]:
        return [self._materialize_group(g) for g in self._group_ids]

    def to_journal(self) -> dict:
        return {
            "structureId": self.structure_id,
            "isActive": self.is_active,
            "effectiveFrom": self.effective_from,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "groups": self.groups(),
        }

    # -- writes -----------------------------------------------------------

    def _group_record(self, group_id: str) -> dict:
        record = self._groups.get(group_id)
        if record is None:
            raise SchemaTreeError("GROUP_NOT_FOUND", "Group not found", "groupId")
        return record

    def _field_record(self, field_id: str) -> dict:
        record = self._fields.get(field_id)
        if record is None:
            raise SchemaTreeError("FIELD_NOT_FOUND", "Field not found", "fieldId")
        return record

    def _type_record(self, type_id: str) -> dict:
        record = self._field_types.get(type_id)
        if record is None:
            raise SchemaTreeError("FIELD_TYPE_NOT_FOUND", "Field type not found", "fieldTypeId")
        return record

    def _attach_check(self, field_id: str) -> str:
        now = timestamp(self._clock)
        type_id = self._new_id()
        self._field_types[type_id] = {
            "id": type_id,
            "fieldId": field_id,
            "kind": CHECK,
            "options": parse_data_options(CHECK, None),
            "order": CHECK_TYPE_ORDER,
            "createdAt": now,
            "updatedAt": now,
        }
        self._check_ids[field_id] = type_id
        return type_id

    def add_group(self, name: str, collapsed_by_default: bool = False) -> str:
        now = timestamp(self._clock)
        group_id = self._new_id()
        self._groups[group_id] = {
            "id": group_id,
            "name": name,
            "order": len(self._group_ids),
            "collapsedByDefault": bool(collapsed_by_default),
            "createdAt": now,
            "updatedAt": now,
        }
        self._group_ids.append(group_id)
        self._field_ids[group_id] = []
        self._touch()
        return group_id

    def add_field(self, group_id: str, name: str, target_index: int | None = None) -> str:
        self._group_record(group_id)
        now = timestamp(self._clock)
        field_id = self._new_id()
        self._fields[field_id] = {
            "id": field_id,
            "groupId": group_id,
            "name": name,
            "order": 0,
            "createdAt": now,
            "updatedAt": now,
        }
        self._type_ids[field_id] = []
        self._attach_check(field_id)
        splice(self._field_ids[group_id], field_id, target_index)
        self._reindex(self._field_ids[group_id], self._fields)
        self._reindex_types(field_id)
        self._touch(self._groups[group_id])
        return field_id

    def add_field_type(
        self,
        field_id: str,
        kind: str,
        description: str | None = None,
        data_options: Any = None,
        index: int | None = None,
    ) -> str:
        field = self._field_record(field_id)
        if kind == CHECK:
            raise SchemaTreeError("CHECK_TYPE_PROTECTED", "A field already has its CHECK type", "kind")
        try:
            options = parse_data_options(kind, data_options)
        except FieldKindError as exc:
            raise SchemaTreeError(exc.code, exc.message, exc.path) from exc
        now = timestamp(self._clock)
        type_id = self._new_id()
        record = {
            "id": type_id,
            "fieldId": field_id,
            "kind": kind,
            "options": options,
            "order": 0,
            "createdAt": now,
            "updatedAt": now,
        }
        if description is not None:
            record["description"] = description
        self._field_types[type_id] = record
        splice(self._type_ids[field_id], type_id, index)
        self._reindex_types(field_id)
        self._touch(field)
        return type_id

    def update_group(self, group_id: str, changes: Dict[str, Any]) -> None:
        record = self._group_record(group_id)
        record.update(changes)
        self._touch(record)

    def update_field(self, field_id: str, changes: Dict[str, Any]) -> None:
        record = self._field_record(field_id)
        record.update(changes)
        self._touch(record)

    def update_field_type(
        self,
        type_id: str,
        *,
        kind: str | None = None,
        description: Any = ...,
        data_options: Any = ...,
    ) -> None:
        """Update a field type; ``...`` means "leave unchanged".

        A new kind without new options keeps whatever of the current options
        the new kind understands and defaults the rest.
        """
        record = self._type_record(type_id)
        current_kind = record["kind"]
        new_kind = current_kind if kind is None else kind
        if new_kind != current_kind and (current_kind == CHECK or new_kind == CHECK):
            raise SchemaTreeError("CHECK_TYPE_PROTECTED", "The CHECK type cannot be retyped", "kind")
        try:
            if data_options is not ...:
                options = parse_data_options(new_kind, data_options)
            elif new_kind != current_kind:
                options = parse_data_options(new_kind, record["options"].to_dict(), strict=False)
            else:
                options = record["options"]
        except FieldKindError as exc:
            raise SchemaTreeError(exc.code, exc.message, exc.path) from exc
        record["kind"] = new_kind
        record["options"] = options
        if description is not ...:
            if description is None:
                record.pop("description", None)
            else:
                record["description"] = description
        self._touch(record)

    def remove_group(self, group_id: str) -> Dict[str, List[str]]:
        self._group_record(group_id)
        removed: Dict[str, List[str]] = {"groups": [group_id], "fields": [], "fieldTypes": []}
        for field_id in list(self._field_ids[group_id]):
            self._drop_field(field_id, removed)
        del self._field_ids[group_id]
        del self._groups[group_id]
        self._group_ids.remove(group_id)
        self._reindex(self._group_ids, self._groups)
        self._touch()
        return removed

    def _drop_field(self, field_id: str, removed: Dict[str, List[str]]) -> None:
        removed["fields"].append(field_id)
        for type_id in self.field_type_ids(field_id):
            removed["fieldTypes"].append(type_id)
            del self._field_types[type_id]
        del self._type_ids[field_id]
        self._check_ids.pop(field_id, None)
        del self._fields[field_id]

    def remove_field(self, field_id: str) -> Dict[str, List[str]]:
        record = self._field_record(field_id)
        group_id = record["groupId"]
        removed: Dict[str, List[str]] = {"groups": [], "fields": [], "fieldTypes": []}
        self._drop_field(field_id, removed)
        self._field_ids[group_id].remove(field_id)
        self._reindex(self._field_ids[group_id], self._fields)
        self._touch(self._groups[group_id])
        return removed

    def remove_field_type(self, type_id: str) -> Dict[str, List[str]]:
        record = self._type_record(type_id)
        if record["kind"] == CHECK:
            raise SchemaTreeError("CHECK_TYPE_PROTECTED", "The CHECK type cannot be removed", "fieldTypeId")
        field_id = record["fieldId"]
        del self._field_types[type_id]
        self._type_ids[field_id].remove(type_id)
        self._reindex_types(field_id)
        self._touch(self._fields[field_id])
        return {"groups": [], "fields": [], "fieldTypes": [type_id]}

    def move_group(self, group_id: str, new_index: int) -> None:
        self._group_record(group_id)
        splice(self._group_ids, group_id, new_index)
        self._reindex(self._group_ids, self._groups)
        self._touch()

    def move_field(self, field_id: str, new_index: int) -> None:
        record = self._field_record(field_id)
        siblings = self._field_ids[record["groupId"]]
        splice(siblings, field_id, new_index)
        self._reindex(siblings, self._fields)
        self._touch(self._groups[record["groupId"]])

    def move_field_type(self, type_id: str, new_index: int) -> None:
        """Move a non-CHECK type among its siblings; the CHECK type stays last and moving it changes nothing."""
        record = self._type_record(type_id)
        if record["kind"] == CHECK:
            return
        field_id = record["fieldId"]
        splice(self._type_ids[field_id], type_id, new_index)
        self._reindex_types(field_id)
        self._touch(self._fields[field_id])
