from __future__ import annotations

from collections.abc import Iterable, Iterator

from agentfleet.models import WorkerInstance, instance_key


class InstanceRegistry:
    """Worker records keyed by ``"<type>:<id>"`` plus per-type id counters.

    Counters hold the next id to hand out for a type and only move forward.
    """

    def __init__(self) -> None:
        self._instances: dict[str, WorkerInstance] = {}
        self._counters: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._instances)

    def __contains__(self, key: object) -> bool:
        return key in self._instances

    def __iter__(self) -> Iterator[WorkerInstance]:
        return iter(list(self._instances.values()))

    def next_id(self, type_name: str) -> int:
        name = type_name.lower()
        current = self._counters.get(name, 1)
        self._counters[name] = current + 1
        return current

    def peek_next_id(self, type_name: str) -> int:
        return self._counters.get(type_name.lower(), 1)

    def merge_counters(self, pairs: Iterable[tuple[str, int]]) -> None:
        for name, value in pairs:
            normalized = name.lower()
            current = self._counters.get(normalized, 1)
            self._counters[normalized] = max(int(value), current)

    def counters(self) -> list[tuple[str, int]]:
        return list(self._counters.items())

    def get(self, type_name: str, instance_id: int) -> WorkerInstance | None:
        return self._instances.get(instance_key(type_name, instance_id))

    def set(self, instance: WorkerInstance) -> None:
        self._instances[instance.key] = instance

    def delete(self, type_name: str, instance_id: int) -> WorkerInstance | None:
        return self._instances.pop(instance_key(type_name, instance_id), None)

    def values(self) -> list[WorkerInstance]:
        return list(self._instances.values())

    def running(self) -> list[WorkerInstance]:
        return [item for item in self._instances.values() if item.status == "running"]

    def clear(self) -> None:
        self._instances.clear()

    def reset(self) -> None:
        self._instances.clear()
        self._counters.clear()
