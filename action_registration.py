"""Delayed-commit registration of quick actions.

``trigger`` starts a countdown task that owns its ``PendingRegistration``.
The commit always runs inside that task: ``confirm`` only wakes it early, so a
countdown expiry racing a confirm still commits once.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict

from action_registry import ActionRegistry


logger = logging.getLogger("quickjournal.registration")

Issue = Dict[str, Any]
CommitHook = Callable[[str], Any]

IDLE = "idle"
PENDING = "pending"
COMMITTED = "committed"
CANCELED = "canceled"

DEFAULT_DELAY_MS = 3000


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _env_delay_ms() -> int:
    raw = os.getenv("JOURNAL_REGISTER_DELAY_MS", "").strip()
    if not raw:
        return DEFAULT_DELAY_MS
    try:
        return max(0, int(raw))
    except ValueError:
        logger.warning("registration_delay_invalid value=%s default=%s", raw, DEFAULT_DELAY_MS)
        return DEFAULT_DELAY_MS


@dataclass
class PendingRegistration:
    action_id: str
    value: Any
    delay_ms: int
    started_at: float
    confirmed: asyncio.Event = field(default_factory=asyncio.Event)
    committing: bool = False
    task: asyncio.Task | None = None

    def time_left_ms(self, now: float) -> int:
        elapsed = (now - self.started_at) * 1000
        return max(0, int(round(self.delay_ms - elapsed)))


class RegistrationProtocol:
    def __init__(
        self,
        registry: ActionRegistry,
        *,
        delay_ms: int | None = None,
        on_committed: CommitHook | None = None,
    ) -> None:
        self._registry = registry
        self.delay_ms = _env_delay_ms() if delay_ms is None else max(0, int(delay_ms))
        self._on_committed = on_committed
        self.state = IDLE
        self.pending: PendingRegistration | None = None
        self.last_error: Issue | None = None

    def _fail(self, code: str, message: str, path: str | None = None) -> None:
        self.last_error = _issue(code, message, path)
        logger.info("registration_rejected code=%s", code)

    def trigger(self, action_id: str, value: Any = None) -> PendingRegistration | None:
        """Start the countdown for ``action_id``; must be called with a running event loop."""
        if self.pending is not None:
            self._fail("REGISTRATION_PENDING", "Another registration is pending", "id")
            return None
        issue = self._registry.check_registrable(action_id, value)
        if issue is not None:
            self.last_error = issue
            logger.info("registration_rejected code=%s action_id=%s", issue["code"], action_id)
            return None
        loop = asyncio.get_running_loop()
        pending = PendingRegistration(action_id, value, self.delay_ms, loop.time())
        pending.task = loop.create_task(self._run(pending))
        self.pending = pending
        self.state = PENDING
        self.last_error = None
        logger.info("registration_pending action_id=%s delay_ms=%s", action_id, self.delay_ms)
        return pending

    def time_left_ms(self) -> int:
        if self.pending is None:
            return 0
        return self.pending.time_left_ms(asyncio.get_running_loop().time())

    async def confirm(self) -> bool:
        pending = self.pending
        if pending is None:
            self._fail("NO_PENDING_REGISTRATION", "Nothing to confirm")
            return False
        if pending.committing:
            self._fail("REGISTRATION_COMMITTING", "Registration is already being committed")
            return False
        pending.confirmed.set()
        return await self._outcome(pending)

    def cancel(self) -> bool:
        pending = self.pending
        if pending is None:
            self._fail("NO_PENDING_REGISTRATION", "Nothing to cancel")
            return False
        if pending.committing:
            self._fail("REGISTRATION_COMMITTING", "Registration is already being committed")
            return False
        if pending.task is not None:
            pending.task.cancel()
        self.pending = None
        self.state = CANCELED
        self.last_error = None
        logger.info("registration_canceled action_id=%s", pending.action_id)
        return True

    async def wait(self) -> bool:
        """Wait for the current pending registration to resolve; ``True`` if it committed."""
        pending = self.pending
        if pending is None:
            return self.state == COMMITTED
        return await self._outcome(pending)

    async def _outcome(self, pending: PendingRegistration) -> bool:
        task = pending.task
        if task is None:
            return False
        await asyncio.wait({task})
        if task.cancelled():
            return False
        return task.result()

    async def _run(self, pending: PendingRegistration) -> bool:
        try:
            await asyncio.wait_for(pending.confirmed.wait(), pending.delay_ms / 1000)
        except asyncio.TimeoutError:
            logger.debug("registration_countdown_elapsed action_id=%s", pending.action_id)
        return await self._commit(pending)

    async def _commit(self, pending: PendingRegistration) -> bool:
        if pending is not self.pending or pending.committing:
            return False
        pending.committing = True
        try:
            ok = await self._registry.register_action(pending.action_id, pending.value)
        finally:
            if self.pending is pending:
                self.pending = None
        if not ok:
            self.state = IDLE
            self.last_error = self._registry.last_error or _issue("SYNC_FAILED", "Failed to register action")
            logger.warning("registration_failed action_id=%s code=%s", pending.action_id, self.last_error["code"])
            return False
        self.state = COMMITTED
        self.last_error = None
        logger.info("registration_committed action_id=%s", pending.action_id)
        if self._on_committed is not None:
            result = self._on_committed(pending.action_id)
            if inspect.isawaitable(result):
                await result
        return True
