"""One editing session: structure editor, action registry, entry editor and registration."""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Any, Callable, Dict

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from action_registration import RegistrationProtocol
from action_registry import ActionRegistry
from app.sync_client import JournalApiClient
from entry_editor import EntryEditor
from quickjournal.dates import Clock, today_str
from structure_editor import StructureEditor
from sync_boundary import SyncError


logger = logging.getLogger("quickjournal.session")


def load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def configure_logging() -> None:
    name = (os.getenv("JOURNAL_LOG_LEVEL") or "INFO").strip().upper()
    level = getattr(logging, name, None)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level)


class JournalSession:
    def __init__(
        self,
        boundary: Any,
        *,
        clock: Clock | None = None,
        id_factory: Callable[[], str] | None = None,
        register_delay_ms: int | None = None,
    ) -> None:
        self.boundary = boundary
        self._clock = clock
        self.structure = StructureEditor(boundary, clock=clock, id_factory=id_factory)
        self.actions = ActionRegistry(boundary, clock=clock)
        self.entry = EntryEditor(boundary, clock=clock)
        self.registration = RegistrationProtocol(
            self.actions,
            delay_ms=register_delay_ms,
            on_committed=self._after_commit,
        )
        self.first_entry_date: str | None = None
        self.structure.subscribe(self._structure_changed)

    def _structure_changed(self, editor: StructureEditor) -> None:
        self.actions.set_structure(editor.tree)

    async def _after_commit(self, action_id: str) -> None:
        today = today_str(self._clock)
        if self.entry.date not in (None, today):
            return
        if self.entry.has_changes:
            logger.info("session_entry_refresh_skipped action_id=%s reason=unsaved_changes", action_id)
            return
        await self.entry.refresh_entry(today)

    async def open(self, date: str | None = None) -> bool:
        """Load structure, actions and the entry for ``date`` (today by default)."""
        loaded = await self.structure.refresh_structure(date)
        await self.actions.fetch_actions()
        entry_date = self.structure.date or date
        if entry_date is not None:
            await self.entry.refresh_entry(entry_date)
        try:
            self.first_entry_date = await self.boundary.fetch_first_entry_date()
        except SyncError as exc:
            logger.warning("session_first_entry_date_failed status=%s error=%s", exc.status, exc.message)
        logger.info(
            "session_opened date=%s structure=%s actions=%s new_user=%s",
            self.structure.date,
            loaded is not None,
            len(self.actions.raw_actions),
            self.structure.is_new_user,
        )
        return loaded is not None

    async def change_date(self, date: str) -> bool:
        loaded = await self.structure.refresh_structure(date)
        if loaded is None:
            return False
        await self.entry.refresh_entry(date)
        return True

    def errors(self) -> Dict[str, Any]:
        return {
            "structure": self.structure.last_error,
            "actions": self.actions.last_error,
            "entry": self.entry.last_error,
            "registration": self.registration.last_error,
        }

    async def close(self) -> None:
        pending = self.registration.pending
        if pending is not None and not pending.committing:
            self.registration.cancel()
        aclose = getattr(self.boundary, "aclose", None)
        if aclose is not None:
            await aclose()


def build_session_from_env(clock: Clock | None = None) -> JournalSession:
    load_env_file(ROOT / "app" / ".env")
    configure_logging()
    return JournalSession(JournalApiClient(), clock=clock)
