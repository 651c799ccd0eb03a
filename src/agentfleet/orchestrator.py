from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal
from uuid import uuid4

from agentfleet.backends.base import SpawnCallbacks
from agentfleet.backends.pi import PiSupervisor, terminate_process
from agentfleet.definitions import WorkerTypeDefinition
from agentfleet.gate import AdvisoryGate
from agentfleet.models import PersistedSnapshot, WorkerInstance, WorkerStatus
from agentfleet.state.journal import SessionJournal
from agentfleet.state.persistence import DefinitionResolver, PersistenceGateway
from agentfleet.state.registry import InstanceRegistry

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = ("scout", "coder", "reviewer", "youtrack")
STAGGER_SECONDS = 0.15

ContinueOutcome = Literal["continued", "not_found", "still_running"]


def session_file_name(type_name: str, instance_id: int, epoch_ms: int, token: str) -> str:
    slug = re.sub(r"\s+", "-", type_name.lower())
    return f"{slug}-{instance_id}-{epoch_ms}-{token}.jsonl"


@dataclass(slots=True)
class SpawnResult:
    instance: WorkerInstance
    result: str


@dataclass(slots=True)
class ParallelResult:
    instances: list[WorkerInstance]
    results: list[str]


@dataclass(slots=True)
class ContinueResult:
    outcome: ContinueOutcome
    instance: WorkerInstance | None = None
    result: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome == "continued"


@dataclass(slots=True)
class ClearResult:
    count: int
    killed: int


@dataclass(slots=True)
class RestoreReport:
    restored: int = 0
    dropped: int = 0
    by_status: dict[str, int] = field(default_factory=dict)

    @property
    def orphaned(self) -> int:
        return self.by_status.get("running", 0)


class Orchestrator:
    """Owns the worker registry and drives every worker lifecycle operation.

    All methods must be called from the event loop thread; instance fields are
    only written here and by the supervisor activation for the current turn.
    """

    def __init__(
        self,
        *,
        resolve: DefinitionResolver,
        supervisor: PiSupervisor,
        persistence: PersistenceGateway,
        sessions_dir: Path,
        on_refresh: Callable[[], None] | None = None,
        stagger_seconds: float = STAGGER_SECONDS,
        priority: Sequence[str] = DEFAULT_PRIORITY,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.resolve = resolve
        self.supervisor = supervisor
        self.persistence = persistence
        self.sessions_dir = sessions_dir
        self.on_refresh = on_refresh
        self.stagger_seconds = stagger_seconds
        self.priority = [name.lower() for name in priority]
        self.registry = InstanceRegistry()
        self.gate = AdvisoryGate()
        self._wall_clock = wall_clock
        self._sessions_dir_ready = False

    def _refresh(self) -> None:
        if self.on_refresh is not None:
            self.on_refresh()

    def snapshot(self) -> PersistedSnapshot:
        return PersistedSnapshot(
            instances=[item.to_persisted() for item in self.registry.values()],
            type_counters=self.registry.counters(),
        )

    def _schedule_save(self) -> None:
        self.persistence.schedule_save(self.snapshot)

    def _make_session_file(self, type_name: str, instance_id: int) -> str:
        if not self._sessions_dir_ready:
            self.sessions_dir.mkdir(parents=True, exist_ok=True)
            self._sessions_dir_ready = True
        epoch_ms = int(self._wall_clock() * 1000)
        name = session_file_name(type_name, instance_id, epoch_ms, uuid4().hex[:6])
        return str(self.sessions_dir / name)

    def _make_callbacks(self, extra: SpawnCallbacks | None) -> SpawnCallbacks:
        def on_text_delta(text: str) -> None:
            self._refresh()
            if extra is not None:
                extra.on_text_delta(text)

        def on_tool_start() -> None:
            self._refresh()
            if extra is not None:
                extra.on_tool_start()

        def on_status_change(status: WorkerStatus, elapsed_ms: int) -> None:
            self._refresh()
            self._schedule_save()
            if extra is not None:
                extra.on_status_change(status, elapsed_ms)

        return SpawnCallbacks(
            on_text_delta=on_text_delta,
            on_tool_start=on_tool_start,
            on_status_change=on_status_change,
        )

    def create(self, definition: WorkerTypeDefinition, task: str) -> WorkerInstance:
        instance_id = self.registry.next_id(definition.name)
        return WorkerInstance(
            id=instance_id,
            definition=definition,
            task=task,
            session_file=self._make_session_file(definition.name, instance_id),
        )

    def store(self, instance: WorkerInstance) -> None:
        self.registry.set(instance)
        self._refresh()
        self._schedule_save()

    async def spawn_single(
        self,
        definition: WorkerTypeDefinition,
        task: str,
        cancel: asyncio.Event | None = None,
        callbacks: SpawnCallbacks | None = None,
    ) -> SpawnResult:
        instance = self.create(definition, task)
        self.store(instance)
        result = await self.supervisor.supervise(
            instance, task, self._make_callbacks(callbacks), cancel
        )
        self._schedule_save()
        return SpawnResult(instance=instance, result=result)

    async def spawn_parallel(
        self,
        definitions: Sequence[WorkerTypeDefinition],
        task: str,
        cancel: asyncio.Event | None = None,
        callbacks: SpawnCallbacks | None = None,
    ) -> ParallelResult:
        # Register the whole batch before any process starts.
        instances = [self.create(definition, task) for definition in definitions]
        for instance in instances:
            self.store(instance)

        async def _launch(index: int, instance: WorkerInstance) -> str:
            if index:
                await asyncio.sleep(index * self.stagger_seconds)
            return await self.supervisor.supervise(
                instance, task, self._make_callbacks(callbacks), cancel
            )

        results = await asyncio.gather(
            *(_launch(index, instance) for index, instance in enumerate(instances))
        )
        self._schedule_save()
        return ParallelResult(instances=instances, results=list(results))

    async def continue_instance(
        self,
        type_name: str,
        instance_id: int,
        task: str,
        cancel: asyncio.Event | None = None,
        callbacks: SpawnCallbacks | None = None,
    ) -> ContinueResult:
        instance = self.registry.get(type_name, instance_id)
        if instance is None:
            return ContinueResult(outcome="not_found")
        if instance.status == "running":
            return ContinueResult(outcome="still_running", instance=instance)

        instance.begin_turn(task)
        self._refresh()
        self._schedule_save()
        logger.info("Continuing %s (turn %d)", instance.label, instance.turn_count)

        result = await self.supervisor.supervise(
            instance, task, self._make_callbacks(callbacks), cancel
        )
        self._schedule_save()
        return ContinueResult(outcome="continued", instance=instance, result=result)

    def remove(self, type_name: str, instance_id: int) -> WorkerInstance | None:
        instance = self.registry.get(type_name, instance_id)
        if instance is None:
            return None
        if instance.status == "running" and terminate_process(instance.process):
            logger.info("Terminated %s before removal", instance.label)
        self.registry.delete(type_name, instance_id)
        self._refresh()
        self._schedule_save()
        return instance

    def clear_all(self) -> ClearResult:
        killed = 0
        for instance in self.registry.running():
            terminate_process(instance.process)
            killed += 1
        count = len(self.registry)
        self.registry.clear()
        self._refresh()
        self._schedule_save()
        return ClearResult(count=count, killed=killed)

    def _sort_key(self, instance: WorkerInstance) -> tuple[int, int, str, int]:
        name = instance.type_name.lower()
        if name in self.priority:
            return (0, self.priority.index(name), "", instance.id)
        return (1, 0, name, instance.id)

    def list_active(self) -> list[WorkerInstance]:
        return sorted(self.registry.values(), key=self._sort_key)

    def latest_idle(self, type_name: str) -> WorkerInstance | None:
        candidates = [
            item
            for item in self.registry.values()
            if item.type_name.lower() == type_name.lower() and item.status != "running"
        ]
        return max(candidates, key=lambda item: item.id, default=None)

    def restore(self) -> RestoreReport:
        snapshot = self.persistence.load()
        if snapshot is None:
            return RestoreReport()

        restored = self.persistence.restore(snapshot, self.registry, self.resolve)
        report = RestoreReport(
            restored=len(restored),
            dropped=len(snapshot.instances) - len(restored),
        )
        for instance in restored:
            report.by_status[instance.status] = report.by_status.get(instance.status, 0) + 1
        logger.info(
            "Restored %d worker(s), dropped %d from %s",
            report.restored,
            report.dropped,
            self.persistence.journal.path,
        )

        if restored:
            self._refresh()
        if report.orphaned:
            logger.warning(
                "%d restored worker(s) were saved as running; their processes are gone",
                report.orphaned,
            )
        return report

    def reset_session(self, journal: SessionJournal | None = None) -> None:
        for instance in self.registry.running():
            terminate_process(instance.process)
        self.registry.reset()
        self.gate.reset()
        self.persistence.reset()
        if journal is not None:
            self.persistence.journal = journal
        self._refresh()

    def shutdown(self) -> None:
        self.persistence.flush()
