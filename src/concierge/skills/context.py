"""Session context store.

One SessionContext per conversation holds the active capability and its
slots, deferred (pending) capabilities, a bounded execution history and free
form variables. The store is the only place that mutates contexts; callers
get deep-copied snapshots back, so state cannot change behind the store's
back.

Persistence is pluggable through ContextBackend (get/set/delete/keys on the
turn path, async load/flush for disk I/O). Turns
for the same session are serialised with session_lock(); the periodic sweep
skips any session whose lock is held.
"""

import asyncio
import copy
import logging
import re
import tempfile
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import quote, unquote

import aiofiles
import aiofiles.os
from pydantic import TypeAdapter, ValidationError

from concierge.skills.errors import InvalidTransitionError
from concierge.skills.types import (
    ActiveCapabilityState,
    CapabilitySpec,
    CapabilityStatus,
    HistoryEntry,
    PendingCapability,
    SessionContext,
    SlotFill,
    SlotSource,
    SlotState,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_HISTORY = 50
DEFAULT_IDLE_TIMEOUT = timedelta(minutes=30)
DEFAULT_CONFIDENCE_THRESHOLD = 0.8

ALLOWED_TRANSITIONS: dict[CapabilityStatus, frozenset[CapabilityStatus]] = {
    CapabilityStatus.SELECTING: frozenset(
        {CapabilityStatus.FILLING, CapabilityStatus.EXECUTING, CapabilityStatus.FAILED}
    ),
    CapabilityStatus.FILLING: frozenset(
        {CapabilityStatus.FILLING, CapabilityStatus.EXECUTING, CapabilityStatus.FAILED}
    ),
    CapabilityStatus.EXECUTING: frozenset(
        {
            CapabilityStatus.COMPLETED,
            CapabilityStatus.FAILED,
            CapabilityStatus.CONFIRMING,
        }
    ),
    CapabilityStatus.CONFIRMING: frozenset(
        {CapabilityStatus.EXECUTING, CapabilityStatus.FAILED}
    ),
    # A recoverable failure goes back to filling (ask the user) or executing (retry)
    CapabilityStatus.FAILED: frozenset(
        {CapabilityStatus.FILLING, CapabilityStatus.EXECUTING}
    ),
    CapabilityStatus.COMPLETED: frozenset(),
}

_WORD_RE = re.compile(r"[a-z0-9]+")
_TRIGGER_STOPWORDS = frozenset(
    {"the", "and", "for", "after", "when", "until", "once", "has", "have", "been", "with", "from"}
)


class ContextBackend(Protocol):
    """Where session contexts live between turns.

    get/set/delete/keys run on the turn path and must not block. Backends
    that persist do their I/O in load() and flush().
    """

    def get(self, session_id: str) -> SessionContext | None: ...

    def set(self, context: SessionContext) -> None: ...

    def delete(self, session_id: str) -> None: ...

    def keys(self) -> list[str]: ...

    async def load(self) -> None: ...

    async def flush(self) -> None: ...


class InMemoryContextBackend:
    """Process-local backend; contexts are lost on restart."""

    def __init__(self) -> None:
        self._contexts: dict[str, SessionContext] = {}

    def get(self, session_id: str) -> SessionContext | None:
        return self._contexts.get(session_id)

    def set(self, context: SessionContext) -> None:
        self._contexts[context.session_id] = context

    def delete(self, session_id: str) -> None:
        self._contexts.pop(session_id, None)

    def keys(self) -> list[str]:
        return list(self._contexts)

    async def load(self) -> None:
        return None

    async def flush(self) -> None:
        return None


class JsonFileContextBackend:
    """One JSON file per session under ``base_path``.

    The turn path only touches an in-memory mirror. load() reads the files
    once and flush() writes the sessions changed since the last flush, both
    through aiofiles. Writes go to a temp file that is renamed into place.
    Unreadable files are logged and skipped, so a corrupt session starts
    fresh.
    """

    _adapter: TypeAdapter[SessionContext] = TypeAdapter(SessionContext)

    def __init__(self, base_path: Path):
        self._base_path = base_path
        self._base_path.mkdir(parents=True, exist_ok=True)
        self._contexts: dict[str, SessionContext] = {}
        self._dirty: set[str] = set()
        self._deleted: set[str] = set()
        self._loaded = False
        self._io_lock = asyncio.Lock()

    def _path(self, session_id: str) -> Path:
        return self._base_path / f"{quote(session_id, safe='')}.json"

    def get(self, session_id: str) -> SessionContext | None:
        return self._contexts.get(session_id)

    def set(self, context: SessionContext) -> None:
        self._contexts[context.session_id] = context
        self._dirty.add(context.session_id)
        self._deleted.discard(context.session_id)

    def delete(self, session_id: str) -> None:
        self._contexts.pop(session_id, None)
        self._dirty.discard(session_id)
        self._deleted.add(session_id)

    def keys(self) -> list[str]:
        return list(self._contexts)

    @property
    def pending_writes(self) -> int:
        return len(self._dirty) + len(self._deleted)

    async def load(self) -> None:
        """Read every session file; later calls are no-ops."""
        async with self._io_lock:
            if not self._loaded:
                await self._load_files()
                self._loaded = True

    async def _load_files(self) -> None:
        names = await aiofiles.os.listdir(self._base_path)
        loaded = 0
        for name in sorted(names):
            if not name.endswith(".json"):
                continue
            session_id = unquote(name[: -len(".json")])
            if session_id in self._contexts or session_id in self._deleted:
                continue
            try:
                async with aiofiles.open(self._base_path / name, "rb") as f:
                    context = self._adapter.validate_json(await f.read())
            except (ValidationError, OSError) as e:
                logger.warning(
                    "session_file_unreadable",
                    extra={"session.id": session_id, "error.message": str(e)},
                )
                continue
            self._contexts[session_id] = context
            loaded += 1
        logger.debug(
            "session_files_loaded",
            extra={"sessions.count": loaded, "file.path": str(self._base_path)},
        )

    async def flush(self) -> None:
        """Write changed sessions and remove deleted ones.

        A session that fails to write stays queued for the next flush.
        """
        async with self._io_lock:
            dirty, self._dirty = self._dirty, set()
            deleted, self._deleted = self._deleted, set()
            for session_id in sorted(deleted):
                try:
                    await aiofiles.os.remove(self._path(session_id))
                except FileNotFoundError:
                    pass
                except OSError as e:
                    self._deleted.add(session_id)
                    logger.error(
                        "session_file_delete_failed",
                        extra={"session.id": session_id, "error.message": str(e)},
                    )
            for session_id in sorted(dirty):
                context = self._contexts.get(session_id)
                if context is None:
                    continue
                try:
                    await self._write(session_id, self._adapter.dump_json(context, indent=2))
                except OSError as e:
                    self._dirty.add(session_id)
                    logger.error(
                        "session_file_write_failed",
                        extra={"session.id": session_id, "error.message": str(e)},
                    )

    async def _write(self, session_id: str, data: bytes) -> None:
        path = self._path(session_id)
        temp_fd, temp_path = tempfile.mkstemp(
            dir=self._base_path, prefix=f".{path.stem}_", suffix=".tmp"
        )
        try:
            async with aiofiles.open(temp_fd, "wb") as f:
                await f.write(data)
            await aiofiles.os.replace(temp_path, path)
        except OSError:
            Path(temp_path).unlink(missing_ok=True)
            raise

@dataclass(slots=True)
class RequiredSlotCheck:
    complete: bool
    missing_fields: list[str]


@dataclass(slots=True)
class CleanupReport:
    evicted_sessions: list[str] = field(default_factory=list)
    expired_pending: int = 0
    skipped_busy: int = 0


class SessionContextStore:
    """Authoritative owner of session state."""

    def __init__(
        self,
        backend: ContextBackend | None = None,
        *,
        max_history: int = DEFAULT_MAX_HISTORY,
        idle_timeout: timedelta = DEFAULT_IDLE_TIMEOUT,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        clock: Callable[[], datetime] = utc_now,
        on_evict: Callable[[str], None] | None = None,
    ):
        self._backend = backend or InMemoryContextBackend()
        self._max_history = max_history
        self._idle_timeout = idle_timeout
        self._confidence_threshold = confidence_threshold
        self._clock = clock
        self._on_evict = on_evict
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def confidence_threshold(self) -> float:
        return self._confidence_threshold

    def now(self) -> datetime:
        return self._clock()

    # -------------------------------------------------------------------------
    # Loading and committing
    # -------------------------------------------------------------------------

    def _load(self, session_id: str) -> SessionContext:
        context = self._backend.get(session_id)
        if context is None:
            raise KeyError(f"Session '{session_id}' not found")
        return context

    def _commit(self, context: SessionContext) -> SessionContext:
        context.last_updated_at = self._clock()
        self._backend.set(context)
        return copy.deepcopy(context)

    def _active(self, context: SessionContext) -> ActiveCapabilityState:
        if context.active_capability is None:
            raise InvalidTransitionError("idle", "slot update")
        return context.active_capability

    def get_or_create(
        self,
        session_id: str,
        user_id: str,
        current_date: date | None = None,
    ) -> SessionContext:
        """Return the session's context, creating it on first use."""
        context = self._backend.get(session_id)
        if context is None:
            context = SessionContext(
                session_id=session_id,
                user_id=user_id,
                current_date=current_date or self._clock().date(),
            )
            logger.debug("session_created", extra={"session.id": session_id})
        elif current_date is not None:
            context.current_date = current_date
        return self._commit(context)

    def get(self, session_id: str) -> SessionContext | None:
        context = self._backend.get(session_id)
        return copy.deepcopy(context) if context is not None else None

    def snapshot(self, session_id: str) -> SessionContext:
        """Deep copy of a context.

        Raises:
            KeyError: If the session does not exist.
        """
        return copy.deepcopy(self._load(session_id))

    def delete(self, session_id: str) -> None:
        self._backend.delete(session_id)
        self._locks.pop(session_id, None)

    def session_ids(self) -> list[str]:
        return self._backend.keys()

    async def load(self) -> None:
        """Read persisted sessions; safe to call more than once."""
        await self._backend.load()

    async def flush(self) -> None:
        """Persist changes made since the last flush."""
        await self._backend.flush()

    # -------------------------------------------------------------------------
    # Active capability
    # -------------------------------------------------------------------------

    def set_active_capability(
        self, session_id: str, spec: CapabilitySpec
    ) -> ActiveCapabilityState:
        """Start a capability: one slot per input field, defaults pre-filled."""
        context = self._load(session_id)
        now = self._clock()
        slots = []
        for schema in spec.input_schema:
            if schema.has_default:
                slots.append(
                    SlotState(
                        field=schema.name,
                        value=copy.deepcopy(schema.default),
                        filled=True,
                        source=SlotSource.DEFAULT,
                        confidence=1.0,
                        filled_at=now,
                    )
                )
            else:
                slots.append(SlotState(field=schema.name))
        context.active_capability = ActiveCapabilityState(
            capability_name=spec.name,
            slots=slots,
            started_at=now,
            updated_at=now,
        )
        return self._commit(context).active_capability  # type: ignore[return-value]

    def transition(self, session_id: str, status: CapabilityStatus) -> None:
        """Move the active capability to ``status``.

        Raises:
            InvalidTransitionError: If there is no active capability or the
                edge is not in ALLOWED_TRANSITIONS.
        """
        context = self._load(session_id)
        if context.active_capability is None:
            raise InvalidTransitionError("idle", status.value)
        active = context.active_capability
        if status not in ALLOWED_TRANSITIONS[active.status]:
            raise InvalidTransitionError(active.status.value, status.value)
        active.status = status
        active.updated_at = self._clock()
        self._commit(context)

    def set_awaiting_field(self, session_id: str, field_name: str | None) -> None:
        context = self._load(session_id)
        active = self._active(context)
        active.awaiting_field = field_name
        self._commit(context)

    def increment_retry(self, session_id: str) -> int:
        context = self._load(session_id)
        active = self._active(context)
        active.retry_count += 1
        self._commit(context)
        return active.retry_count

    def clear_active_capability(self, session_id: str) -> None:
        context = self._load(session_id)
        if context.active_capability is not None:
            context.active_capability = None
            self._commit(context)

    # -------------------------------------------------------------------------
    # Slots
    # -------------------------------------------------------------------------

    def fill_slots(self, session_id: str, fills: Iterable[SlotFill]) -> list[SlotFill]:
        """Commit extracted values to the active capability's slots.

        Values below the confidence threshold and unknown fields are ignored.
        Filling a slot again with the same value only refreshes ``filled_at``.

        Returns:
            The fills that were accepted.
        """
        context = self._load(session_id)
        active = self._active(context)
        now = self._clock()
        accepted: list[SlotFill] = []
        for fill in fills:
            slot = active.get_slot(fill.field)
            if slot is None:
                logger.debug(
                    "slot_fill_unknown_field",
                    extra={"session.id": session_id, "slot.field": fill.field},
                )
                continue
            if fill.confidence < self._confidence_threshold:
                continue
            slot.value = copy.deepcopy(fill.value)
            slot.filled = True
            slot.source = fill.source
            slot.confidence = fill.confidence
            slot.filled_at = now
            accepted.append(fill)
        if accepted:
            active.updated_at = now
            self._commit(context)
        return accepted

    def fill_slot(
        self,
        session_id: str,
        field_name: str,
        value: Any,
        *,
        source: SlotSource = SlotSource.USER_INPUT,
        confidence: float = 1.0,
    ) -> bool:
        return bool(
            self.fill_slots(session_id, [SlotFill(field_name, value, confidence, source)])
        )

    def clear_slots(self, session_id: str, fields: Iterable[str]) -> None:
        """Mark slots unfilled so their values are asked for again."""
        context = self._load(session_id)
        active = self._active(context)
        for name in fields:
            if slot := active.get_slot(name):
                slot.value = None
                slot.filled = False
                slot.source = None
                slot.confidence = 0.0
                slot.filled_at = None
        active.updated_at = self._clock()
        self._commit(context)

    def unfilled_slots(self, session_id: str) -> list[SlotState]:
        active = self._load(session_id).active_capability
        if active is None:
            return []
        return [copy.deepcopy(s) for s in active.slots if not s.filled]

    def filled_params(self, session_id: str) -> dict[str, Any]:
        active = self._load(session_id).active_capability
        if active is None:
            return {}
        return {s.field: copy.deepcopy(s.value) for s in active.slots if s.filled}

    def check_required_slots(
        self, session_id: str, spec: CapabilitySpec
    ) -> RequiredSlotCheck:
        filled = self.filled_params(session_id)
        missing = [f for f in spec.required_fields if f not in filled]
        return RequiredSlotCheck(complete=not missing, missing_fields=missing)

    # -------------------------------------------------------------------------
    # Pending capabilities
    # -------------------------------------------------------------------------

    def add_pending(self, session_id: str, pending: PendingCapability) -> None:
        """Defer a capability. Replaces an existing entry for the same capability."""
        context = self._load(session_id)
        context.pending_capabilities = [
            p
            for p in context.pending_capabilities
            if p.capability_name != pending.capability_name
        ]
        context.pending_capabilities.append(copy.deepcopy(pending))
        self._commit(context)

    def get_pending(self, session_id: str) -> list[PendingCapability]:
        """Pending capabilities that have not expired."""
        context = self._backend.get(session_id)
        if context is None:
            return []
        now = self._clock()
        return [
            copy.deepcopy(p) for p in context.pending_capabilities if not p.is_expired(now)
        ]

    def remove_pending(
        self, session_id: str, capability_name: str
    ) -> PendingCapability | None:
        context = self._load(session_id)
        for index, pending in enumerate(context.pending_capabilities):
            if pending.capability_name == capability_name:
                del context.pending_capabilities[index]
                self._commit(context)
                return pending
        return None

    def check_pending_trigger(
        self, session_id: str, user_input: str
    ) -> PendingCapability | None:
        """First unexpired pending capability whose trigger appears in the input.

        A trigger matches when the whole ``waiting_for`` text is contained in
        the input, or when every significant word of it is.
        """
        text = user_input.lower()
        words = set(_WORD_RE.findall(text))
        for pending in self.get_pending(session_id):
            trigger = pending.waiting_for.lower().strip()
            if not trigger:
                continue
            if trigger in text:
                return pending
            significant = {
                w
                for w in _WORD_RE.findall(trigger)
                if len(w) >= 3 and w not in _TRIGGER_STOPWORDS
            }
            if significant and significant <= words:
                return pending
        return None

    # -------------------------------------------------------------------------
    # History and variables
    # -------------------------------------------------------------------------

    def add_history(self, session_id: str, entry: HistoryEntry) -> None:
        context = self._load(session_id)
        context.history.append(copy.deepcopy(entry))
        if len(context.history) > self._max_history:
            del context.history[: len(context.history) - self._max_history]
        self._commit(context)

    def recent_history(self, session_id: str, count: int = 5) -> list[HistoryEntry]:
        context = self._backend.get(session_id)
        if context is None or count <= 0:
            return []
        return copy.deepcopy(context.history[-count:])

    def capability_history(self, session_id: str, name: str) -> list[HistoryEntry]:
        context = self._backend.get(session_id)
        if context is None:
            return []
        return [copy.deepcopy(e) for e in context.history if e.capability_name == name]

    def set_variable(self, session_id: str, key: str, value: Any) -> None:
        context = self._load(session_id)
        context.variables[key] = copy.deepcopy(value)
        self._commit(context)

    def get_variable(self, session_id: str, key: str, default: Any = None) -> Any:
        context = self._backend.get(session_id)
        if context is None:
            return default
        return copy.deepcopy(context.variables.get(key, default))

    def summary(self, session_id: str) -> str:
        """Short human-readable description of a session's state."""
        context = self._backend.get(session_id)
        if context is None:
            return f"session {session_id}: not found"
        lines = [f"session {session_id} (user {context.user_id}, {context.current_date})"]
        if active := context.active_capability:
            filled = ", ".join(f"{s.field}={s.value}" for s in active.slots if s.filled)
            lines.append(
                f"active: {active.capability_name} [{active.status.value}] {filled or 'no slots filled'}"
            )
        pending = self.get_pending(session_id)
        if pending:
            lines.append(
                "pending: "
                + ", ".join(f"{p.capability_name} (waiting for {p.waiting_for})" for p in pending)
            )
        lines.append(f"history: {len(context.history)} entries")
        return "\n".join(lines)

    def stats(self) -> dict[str, int]:
        active = pending = history = 0
        ids = self._backend.keys()
        for session_id in ids:
            context = self._backend.get(session_id)
            if context is None:
                continue
            active += context.active_capability is not None
            pending += len(context.pending_capabilities)
            history += len(context.history)
        return {
            "sessions": len(ids),
            "active_capabilities": active,
            "pending_capabilities": pending,
            "history_entries": history,
        }

    # -------------------------------------------------------------------------
    # Concurrency and cleanup
    # -------------------------------------------------------------------------

    def session_lock(self, session_id: str) -> asyncio.Lock:
        """Lock serialising turns for one session."""
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    def is_busy(self, session_id: str) -> bool:
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()

    def cleanup(self, now: datetime | None = None) -> CleanupReport:
        """Evict idle sessions and prune expired pending capabilities.

        Runs without awaiting, so it is atomic with respect to turns on the
        same event loop. Sessions with a turn in flight are left alone.
        """
        now = now or self._clock()
        report = CleanupReport()
        for session_id in self._backend.keys():
            if self.is_busy(session_id):
                report.skipped_busy += 1
                continue
            context = self._backend.get(session_id)
            if context is None:
                continue
            if now - context.last_updated_at > self._idle_timeout:
                self.delete(session_id)
                report.evicted_sessions.append(session_id)
                if self._on_evict is not None:
                    self._on_evict(session_id)
                continue
            live = [p for p in context.pending_capabilities if not p.is_expired(now)]
            expired = len(context.pending_capabilities) - len(live)
            if expired:
                context.pending_capabilities = live
                # Pruning is housekeeping; it must not reset the idle clock
                self._backend.set(context)
                report.expired_pending += expired

        if report.evicted_sessions or report.expired_pending:
            logger.info(
                "session_cleanup",
                extra={
                    "sessions.evicted": len(report.evicted_sessions),
                    "pending.expired": report.expired_pending,
                    "sessions.busy": report.skipped_busy,
                },
            )
        return report


class ContextSweeper:
    """Runs SessionContextStore.cleanup() on a fixed interval.

    Example:
        sweeper = ContextSweeper(store, interval=60)
        await sweeper.start()
        ...
        await sweeper.stop()
    """

    def __init__(self, store: SessionContextStore, interval: float = 60.0):
        self._store = store
        self._interval = interval
        self._running = False
        self._task: asyncio.Task | None = None
        self._sweep_count = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def sweep_count(self) -> int:
        return self._sweep_count

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        logger.info("context_sweeper_started", extra={"sweep.interval_s": self._interval})
        self._task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("context_sweeper_stopped", extra={"sweep.count": self._sweep_count})

    def run_once(self) -> CleanupReport:
        self._sweep_count += 1
        return self._store.cleanup()

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._interval)
            try:
                self.run_once()
                await self._store.flush()
            except Exception as e:
                logger.error("context_sweep_error", extra={"error.message": str(e)})
