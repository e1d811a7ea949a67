"""Structure tree editor: optimistic local edits over one SchemaTree, plus save/refresh."""

from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Dict, List

from quickjournal.dates import Clock, is_valid_date, today_str
from quickjournal.structure_hash import structure_hash
from schema_tree import SchemaTree, SchemaTreeError
from sync_boundary import SyncError, TOMBSTONE_KINDS, empty_tombstones, structure_save_body


logger = logging.getLogger("quickjournal.structure")

Issue = Dict[str, Any]
Handler = Callable[["StructureEditor"], None]

_GROUP_EDITABLE = frozenset({"name", "collapsedByDefault"})
_FIELD_EDITABLE = frozenset({"name"})
_FIELD_TYPE_EDITABLE = frozenset({"kind", "description", "dataOptions"})
# Keys that describe tree shape; updates carrying them are accepted but these keys are ignored.
_STRUCTURAL_KEYS = frozenset(
    {"id", "fields", "fieldTypes", "groupId", "fieldId", "order", "createdAt", "updatedAt"}
)


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _editable(updates: Any, allowed: frozenset) -> Dict[str, Any]:
    if not isinstance(updates, dict):
        raise SchemaTreeError("INVALID_UPDATE", "updates must be an object", "updates")
    unknown = sorted(k for k in updates if k not in allowed and k not in _STRUCTURAL_KEYS)
    if unknown:
        raise SchemaTreeError("INVALID_UPDATE", f"cannot update {', '.join(unknown)}", "updates")
    return {k: v for k, v in updates.items() if k in allowed}


def _check_name(name: Any, path: str = "name") -> str:
    if not isinstance(name, str):
        raise SchemaTreeError("INVALID_NAME", "name must be a string", path)
    return name


def _check_flag(value: Any, path: str) -> bool:
    if not isinstance(value, bool):
        raise SchemaTreeError("INVALID_UPDATE", f"{path} must be a boolean", path)
    return value


def _check_index(index: Any, path: str) -> int | None:
    if index is None:
        return None
    if isinstance(index, bool) or not isinstance(index, int):
        raise SchemaTreeError("INVALID_INDEX", "index must be an integer", path)
    return index


class StructureEditor:
    """Owns one editing session's structure tree.

    Every mutating call either applies completely (dirty flag set, subscribers
    notified, ``last_error`` cleared) or leaves the tree untouched and reports
    through ``last_error``. Removed ids accumulate in ``deleted_elements`` until
    a save succeeds.
    """

    def __init__(self, boundary: Any, *, clock: Clock | None = None, id_factory: Callable[[], str] | None = None) -> None:
        self._boundary = boundary
        self._clock = clock
        self._id_factory = id_factory
        self._tree: SchemaTree | None = None
        self._deleted: Dict[str, List[str]] = empty_tombstones()
        self._has_changes = False
        self._date: str | None = None
        self._is_historical = False
        self._is_new_user = False
        self._seq = 0
        self._subs: List[Handler] = []
        self.last_error: Issue | None = None

    # -- state ------------------------------------------------------------

    @property
    def tree(self) -> SchemaTree | None:
        return self._tree

    @property
    def structure(self) -> dict | None:
        return self._tree.to_journal() if self._tree is not None else None

    @property
    def structure_hash(self) -> str | None:
        return structure_hash(self._tree.groups()) if self._tree is not None else None

    @property
    def has_changes(self) -> bool:
        return self._has_changes

    @property
    def is_historical(self) -> bool:
        return self._is_historical

    @property
    def is_new_user(self) -> bool:
        return self._is_new_user

    @property
    def date(self) -> str | None:
        return self._date

    @property
    def deleted_elements(self) -> Dict[str, List[str]]:
        return copy.deepcopy(self._deleted)

    def find_field(self, field_id: str) -> dict | None:
        return self._tree.get_field(field_id) if self._tree is not None else None

    def check_field_type(self, field_id: str) -> dict | None:
        if self._tree is None:
            return None
        type_id = self._tree.check_type_id(field_id)
        return self._tree.get_field_type(type_id) if type_id else None

    # -- subscribers --------------------------------------------------------

    def subscribe(self, handler: Handler) -> None:
        self._subs.append(handler)

    def unsubscribe(self, handler: Handler) -> bool:
        try:
            self._subs.remove(handler)
            return True
        except ValueError:
            return False

    def _notify(self) -> None:
        for handler in list(self._subs):
            try:
                handler(self)
            except Exception:
                logger.exception("structure_subscriber_failed handler=%r", handler)

    # -- internals ----------------------------------------------------------

    def _fail(self, code: str, message: str, path: str | None = None, detail: dict | None = None) -> None:
        self.last_error = _issue(code, message, path, detail)
        logger.info("structure_op_rejected code=%s message=%s path=%s", code, message, path)

    def _mutate(self, op: str, apply: Callable[[SchemaTree], Any]) -> Any:
        tree = self._tree
        if tree is None:
            self._fail("NO_STRUCTURE", "No journal exists")
            return None
        if self._is_historical:
            self._fail("STRUCTURE_READ_ONLY", "Historical structures are read-only")
            return None
        revision = tree.revision
        try:
            result = apply(tree)
        except SchemaTreeError as exc:
            self._fail(exc.code, exc.message, exc.path)
            return None
        self.last_error = None
        if tree.revision == revision:
            return True if result is None else result
        self._has_changes = True
        logger.debug("structure_%s revision=%s", op, tree.revision)
        self._notify()
        return True if result is None else result

    def _tombstone(self, removed: Dict[str, List[str]]) -> None:
        for kind in TOMBSTONE_KINDS:
            bucket = self._deleted[kind]
            for node_id in removed.get(kind, []):
                if node_id not in bucket:
                    bucket.append(node_id)

    def _forget_tombstones(self, sent: Dict[str, List[str]]) -> None:
        for kind in TOMBSTONE_KINDS:
            done = set(sent.get(kind, []))
            self._deleted[kind] = [i for i in self._deleted[kind] if i not in done]

    def _install(self, tree: SchemaTree) -> None:
        if tree.repairs:
            logger.warning("structure_check_type_attached fields=%s", ",".join(tree.repairs))
        self._tree = tree
        self._is_historical = not tree.is_active
        self._notify()

    def _is_stale(self, seq: int, base: SchemaTree | None, base_revision: int) -> bool:
        if seq != self._seq or self._tree is not base:
            return True
        return base is not None and base.revision != base_revision

    def _load(self, raw: Any) -> SchemaTree | None:
        try:
            return SchemaTree.from_journal(raw, clock=self._clock, id_factory=self._id_factory)
        except SchemaTreeError as exc:
            self._fail("INVALID_STRUCTURE", exc.message, exc.path)
            return None

    # -- groups -------------------------------------------------------------

    def add_group(self, name: str, collapsed_by_default: bool = False) -> dict | None:
        group_id = self._mutate(
            "add_group",
            lambda tree: tree.add_group(_check_name(name), _check_flag(collapsed_by_default, "collapsedByDefault")),
        )
        return self._tree.get_group(group_id) if group_id else None

    def update_group(self, group_id: str, updates: dict) -> bool:
        def apply(tree: SchemaTree) -> None:
            changes = _editable(updates, _GROUP_EDITABLE)
            if "name" in changes:
                _check_name(changes["name"])
            if "collapsedByDefault" in changes:
                _check_flag(changes["collapsedByDefault"], "collapsedByDefault")
            tree.update_group(group_id, changes)

        return bool(self._mutate("update_group", apply))

    def remove_group(self, group_id: str) -> bool:
        return bool(self._mutate("remove_group", lambda tree: self._tombstone(tree.remove_group(group_id))))

    def reorder_group(self, group_id: str, new_index: int) -> bool:
        def apply(tree: SchemaTree) -> None:
            tree.move_group(group_id, _check_index(new_index, "newIndex") or 0)

        return bool(self._mutate("reorder_group", apply))

    # -- fields -------------------------------------------------------------

    def add_field(self, group_id: str, name: str, target_index: int | None = None) -> dict | None:
        def apply(tree: SchemaTree) -> str:
            return tree.add_field(group_id, _check_name(name), _check_index(target_index, "targetIndex"))

        field_id = self._mutate("add_field", apply)
        return self._tree.get_field(field_id) if field_id else None

    def update_field(self, field_id: str, updates: dict) -> bool:
        def apply(tree: SchemaTree) -> None:
            changes = _editable(updates, _FIELD_EDITABLE)
            if "name" in changes:
                _check_name(changes["name"])
            tree.update_field(field_id, changes)

        return bool(self._mutate("update_field", apply))

    def remove_field(self, field_id: str) -> bool:
        return bool(self._mutate("remove_field", lambda tree: self._tombstone(tree.remove_field(field_id))))

    def reorder_field(self, field_id: str, new_index: int) -> bool:
        def apply(tree: SchemaTree) -> None:
            tree.move_field(field_id, _check_index(new_index, "newIndex") or 0)

        return bool(self._mutate("reorder_field", apply))

    # -- field types --------------------------------------------------------

    def add_field_type(
        self,
        field_id: str,
        kind: str,
        description: str | None = None,
        data_options: dict | None = None,
        order: int | None = None,
    ) -> dict | None:
        def apply(tree: SchemaTree) -> str:
            return tree.add_field_type(field_id, kind, description, data_options, _check_index(order, "order"))

        type_id = self._mutate("add_field_type", apply)
        return self._tree.get_field_type(type_id) if type_id else None

    def update_field_type(self, field_type_id: str, updates: dict) -> bool:
        def apply(tree: SchemaTree) -> None:
            changes = _editable(updates, _FIELD_TYPE_EDITABLE)
            description = changes.get("description", ...)
            if description is not ... and description is not None and not isinstance(description, str):
                raise SchemaTreeError("INVALID_UPDATE", "description must be a string", "description")
            tree.update_field_type(
                field_type_id,
                kind=changes.get("kind"),
                description=description,
                data_options=changes.get("dataOptions", ...),
            )

        return bool(self._mutate("update_field_type", apply))

    def remove_field_type(self, field_type_id: str) -> bool:
        return bool(
            self._mutate("remove_field_type", lambda tree: self._tombstone(tree.remove_field_type(field_type_id)))
        )

    def reorder_field_type(self, field_type_id: str, new_index: int) -> bool:
        def apply(tree: SchemaTree) -> None:
            tree.move_field_type(field_type_id, _check_index(new_index, "newIndex") or 0)

        return bool(self._mutate("reorder_field_type", apply))

    # -- synchronization ----------------------------------------------------

    async def save_structure(self) -> dict | None:
        tree = self._tree
        if tree is None:
            self._fail("NO_STRUCTURE", "No journal exists")
            return None
        if self._is_historical:
            self._fail("STRUCTURE_READ_ONLY", "Historical structures are read-only")
            return None

        current_date = self._date or today_str(self._clock)
        sent = copy.deepcopy(self._deleted)
        body = structure_save_body(tree.groups(), current_date, sent)
        revision = tree.revision
        self._seq += 1
        seq = self._seq
        logger.info(
            "structure_save_started date=%s groups=%s tombstones=%s",
            current_date,
            len(body["groups"]),
            sum(len(v) for v in sent.values()),
        )
        try:
            saved = await self._boundary.save_structure(body)
        except SyncError as exc:
            self._fail("SYNC_FAILED", "Failed to save journal structure", detail={"status": exc.status, "error": exc.message})
            logger.warning("structure_save_failed status=%s error=%s", exc.status, exc.message)
            return None

        new_tree = self._load(saved)
        if new_tree is None:
            return None
        self._forget_tombstones(sent)
        self.last_error = None
        if self._is_stale(seq, tree, revision):
            logger.info("structure_save_kept_local_edits revision=%s", tree.revision)
            return new_tree.to_journal()
        self._has_changes = False
        self._install(new_tree)
        logger.info("structure_save_succeeded structure_id=%s", new_tree.structure_id)
        return new_tree.to_journal()

    async def refresh_structure(self, date: str | None = None) -> dict | None:
        target = today_str(self._clock) if date is None else date
        if not is_valid_date(target):
            self._fail("INVALID_DATE", "Invalid date format. Expected YYYY-MM-DD.", "date")
            return None

        base, base_revision = self._tree, self._tree.revision if self._tree is not None else 0
        self._seq += 1
        seq = self._seq
        try:
            raw = await self._boundary.fetch_structure(target)
        except SyncError as exc:
            if self._is_stale(seq, base, base_revision):
                self._fail("STALE_RESPONSE", "A newer request or edit superseded this fetch", detail={"date": target})
                return None
            if exc.not_found:
                if target == today_str(self._clock):
                    return await self._create_default(target)
                self._fail("STRUCTURE_NOT_FOUND", "No structure found for the selected date", "date", {"date": target})
                return None
            self._fail("SYNC_FAILED", "Failed to load journal structure", detail={"status": exc.status, "error": exc.message})
            logger.warning("structure_fetch_failed date=%s status=%s", target, exc.status)
            return None

        if self._is_stale(seq, base, base_revision):
            self._fail("STALE_RESPONSE", "A newer request or edit superseded this fetch", detail={"date": target})
            logger.info("structure_fetch_discarded date=%s seq=%s latest=%s", target, seq, self._seq)
            return None
        tree = self._load(raw)
        if tree is None:
            return None
        self._date = target
        self._deleted = empty_tombstones()
        self._has_changes = False
        self._is_new_user = False
        self.last_error = None
        self._install(tree)
        logger.info("structure_loaded date=%s historical=%s", target, self._is_historical)
        return tree.to_journal()

    async def _create_default(self, date: str) -> dict | None:
        tree = SchemaTree.default(date, clock=self._clock, id_factory=self._id_factory)
        base, base_revision = self._tree, self._tree.revision if self._tree is not None else 0
        self._seq += 1
        seq = self._seq
        logger.info("structure_default_create date=%s", date)
        try:
            saved = await self._boundary.save_structure(structure_save_body(tree.groups(), date))
        except SyncError as exc:
            if self._is_stale(seq, base, base_revision):
                self._fail("STALE_RESPONSE", "A newer request superseded this fetch", detail={"date": date})
                return None
            self._date = date
            self._deleted = empty_tombstones()
            self._is_new_user = True
            self._has_changes = True
            self._install(tree)
            self._fail("SYNC_FAILED", "Failed to create default structure", detail={"status": exc.status, "error": exc.message})
            return None
        if self._is_stale(seq, base, base_revision):
            self._fail("STALE_RESPONSE", "A newer request superseded this fetch", detail={"date": date})
            logger.info("structure_default_discarded date=%s seq=%s latest=%s", date, seq, self._seq)
            return None
        new_tree = self._load(saved)
        if new_tree is None:
            return None
        self._date = date
        self._deleted = empty_tombstones()
        self._is_new_user = True
        self._has_changes = False
        self.last_error = None
        self._install(new_tree)
        return new_tree.to_journal()
