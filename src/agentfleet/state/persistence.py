from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable

from agentfleet.definitions import WorkerTypeDefinition
from agentfleet.models import PersistedSnapshot, WorkerInstance
from agentfleet.state.journal import JournalError, SessionJournal
from agentfleet.state.registry import InstanceRegistry

logger = logging.getLogger(__name__)

RECORD_KIND = "agent-fleet"
SAVE_DEBOUNCE_SECONDS = 5.0

DefinitionResolver = Callable[[str], WorkerTypeDefinition | None]


class DebouncedScheduler:
    """Runs the most recently scheduled callback once the loop has been quiet
    for ``delay_seconds``.

    Outside a running event loop there is nothing to defer onto, so
    ``schedule`` calls through immediately.
    """

    def __init__(self, delay_seconds: float = SAVE_DEBOUNCE_SECONDS) -> None:
        self.delay_seconds = delay_seconds
        self._handle: asyncio.TimerHandle | None = None
        self._callback: Callable[[], None] | None = None

    @property
    def pending(self) -> bool:
        return self._callback is not None

    def schedule(self, callback: Callable[[], None]) -> None:
        self.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            callback()
            return
        self._callback = callback
        self._handle = loop.call_later(self.delay_seconds, self._fire)

    def _fire(self) -> None:
        callback = self._callback
        self._handle = None
        self._callback = None
        if callback is not None:
            callback()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._handle = None
        self._callback = None

    def flush(self) -> bool:
        if self._callback is None:
            return False
        if self._handle is not None:
            self._handle.cancel()
        self._fire()
        return True


class PersistenceGateway:
    def __init__(
        self,
        journal: SessionJournal,
        *,
        debounce_seconds: float = SAVE_DEBOUNCE_SECONDS,
        scheduler: DebouncedScheduler | None = None,
    ) -> None:
        self.journal = journal
        self.scheduler = scheduler or DebouncedScheduler(debounce_seconds)
        self._last_saved = ""

    @staticmethod
    def serialize(snapshot: PersistedSnapshot) -> str:
        return json.dumps(snapshot.to_dict(), ensure_ascii=False, separators=(",", ":"))

    def schedule_save(self, snapshot_fn: Callable[[], PersistedSnapshot]) -> None:
        self.scheduler.schedule(lambda: self._save_logged(snapshot_fn))

    def _save_logged(self, snapshot_fn: Callable[[], PersistedSnapshot]) -> None:
        try:
            self.save(snapshot_fn())
        except JournalError:
            logger.exception("Failed to persist worker snapshot to %s", self.journal.path)

    def save(self, snapshot: PersistedSnapshot) -> bool:
        """Append ``snapshot`` unless it matches the last one written."""
        serialized = self.serialize(snapshot)
        if serialized == self._last_saved:
            logger.debug("Snapshot unchanged; skipping journal write")
            return False
        self.journal.append(RECORD_KIND, snapshot.to_dict())
        self._last_saved = serialized
        logger.info(
            "Saved snapshot with %d instance(s) to %s", len(snapshot.instances), self.journal.path
        )
        return True

    def flush(self) -> bool:
        return self.scheduler.flush()

    def reset(self) -> None:
        self._last_saved = ""
        self.scheduler.cancel()

    def load(self) -> PersistedSnapshot | None:
        try:
            records = self.journal.read_all()
        except OSError as exc:
            logger.warning("Could not read journal %s: %s", self.journal.path, exc)
            return None

        for record in reversed(records):
            if record.get("type") != "custom" or record.get("customType") != RECORD_KIND:
                continue
            snapshot = PersistedSnapshot.from_dict(record.get("data"))
            if snapshot is None:
                logger.warning("Ignoring malformed snapshot in %s", self.journal.path)
            else:
                # The newest record is what a matching save would duplicate.
                self._last_saved = self.serialize(snapshot)
            return snapshot
        return None

    @staticmethod
    def restore(
        snapshot: PersistedSnapshot,
        registry: InstanceRegistry,
        resolve: DefinitionResolver,
    ) -> list[WorkerInstance]:
        registry.merge_counters(snapshot.type_counters)
        restored: list[WorkerInstance] = []
        for persisted in snapshot.instances:
            definition = resolve(persisted.type_name)
            if definition is None:
                logger.info(
                    "Dropping %s #%d: definition no longer exists",
                    persisted.type_name,
                    persisted.id,
                )
                continue
            instance = persisted.to_instance(definition)
            registry.merge_counters([(definition.name, instance.id + 1)])
            registry.set(instance)
            restored.append(instance)
        return restored
