from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from agentfleet.definitions import WorkerTypeDefinition

WorkerStatus = Literal["running", "done", "error"]
WORKER_STATUSES: tuple[WorkerStatus, ...] = ("running", "done", "error")


def instance_key(type_name: str, instance_id: int) -> str:
    return f"{type_name.lower()}:{instance_id}"


@dataclass(slots=True, eq=False)
class WorkerInstance:
    id: int
    definition: WorkerTypeDefinition
    task: str
    session_file: str
    status: WorkerStatus = "running"
    output_chunks: list[str] = field(default_factory=list)
    tool_count: int = 0
    elapsed_ms: int = 0
    turn_count: int = 1
    process: Any | None = field(default=None, repr=False)

    @property
    def type_name(self) -> str:
        return self.definition.name

    @property
    def key(self) -> str:
        return instance_key(self.definition.name, self.id)

    @property
    def label(self) -> str:
        return f"{self.definition.name} #{self.id}"

    @property
    def is_live(self) -> bool:
        return self.status == "running" and self.process is not None

    def result_text(self) -> str:
        return "".join(self.output_chunks)

    def begin_turn(self, task: str) -> None:
        self.status = "running"
        self.task = task
        self.output_chunks = []
        self.elapsed_ms = 0
        self.turn_count += 1

    def to_persisted(self) -> PersistedInstance:
        return PersistedInstance(
            id=self.id,
            type_name=self.definition.name,
            status=self.status,
            task=self.task,
            output_chunks=list(self.output_chunks),
            tool_count=self.tool_count,
            elapsed_ms=self.elapsed_ms,
            session_file=self.session_file,
            turn_count=self.turn_count,
        )


@dataclass(slots=True)
class PersistedInstance:
    """Serializable projection of a worker: no process handle, type by name."""

    id: int
    type_name: str
    status: WorkerStatus
    task: str
    output_chunks: list[str]
    tool_count: int
    elapsed_ms: int
    session_file: str
    turn_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "typeName": self.type_name,
            "status": self.status,
            "task": self.task,
            "outputChunks": list(self.output_chunks),
            "toolInvocationCount": self.tool_count,
            "elapsedMillis": self.elapsed_ms,
            "sessionFile": self.session_file,
            "turnCount": self.turn_count,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PersistedInstance:
        status = payload.get("status")
        if status not in WORKER_STATUSES:
            raise ValueError(f"Unknown worker status: {status!r}")
        chunks = payload.get("outputChunks") or []
        if not isinstance(chunks, list):
            raise ValueError("outputChunks must be a list")
        return cls(
            id=int(payload["id"]),
            type_name=str(payload["typeName"]),
            status=status,
            task=str(payload.get("task", "")),
            output_chunks=[str(chunk) for chunk in chunks],
            tool_count=int(payload.get("toolInvocationCount", 0)),
            elapsed_ms=int(payload.get("elapsedMillis", 0)),
            session_file=str(payload.get("sessionFile", "")),
            turn_count=int(payload.get("turnCount", 1)),
        )

    def to_instance(self, definition: WorkerTypeDefinition) -> WorkerInstance:
        return WorkerInstance(
            id=self.id,
            definition=definition,
            task=self.task,
            session_file=self.session_file,
            status=self.status,
            output_chunks=list(self.output_chunks),
            tool_count=self.tool_count,
            elapsed_ms=self.elapsed_ms,
            turn_count=self.turn_count,
        )


@dataclass(slots=True)
class PersistedSnapshot:
    instances: list[PersistedInstance] = field(default_factory=list)
    type_counters: list[tuple[str, int]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "instances": [item.to_dict() for item in self.instances],
            "typeCounters": [[name, value] for name, value in self.type_counters],
        }

    @classmethod
    def from_dict(cls, payload: Any) -> PersistedSnapshot | None:
        """Return ``None`` unless ``payload`` has an array-shaped ``instances`` field.

        Individual malformed entries are skipped.
        """
        if not isinstance(payload, dict):
            return None
        raw_instances = payload.get("instances")
        if not isinstance(raw_instances, list):
            return None

        instances: list[PersistedInstance] = []
        for item in raw_instances:
            if not isinstance(item, dict):
                continue
            try:
                instances.append(PersistedInstance.from_dict(item))
            except (KeyError, TypeError, ValueError):
                continue

        counters: list[tuple[str, int]] = []
        raw_counters = payload.get("typeCounters")
        if isinstance(raw_counters, list):
            for pair in raw_counters:
                if not isinstance(pair, list | tuple) or len(pair) != 2:
                    continue
                name, value = pair
                try:
                    counters.append((str(name), int(value)))
                except (TypeError, ValueError):
                    continue
        return cls(instances=instances, type_counters=counters)
