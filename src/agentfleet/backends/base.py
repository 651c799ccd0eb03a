from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from agentfleet.models import WorkerStatus

ProcessSpawner = Callable[..., Awaitable[Any]]


class WorkerProcessError(RuntimeError):
    """Raised when a worker subprocess lifecycle fails."""

    def __init__(
        self,
        message: str,
        *,
        type_name: str | None = None,
        instance_id: int | None = None,
    ) -> None:
        super().__init__(message)
        self.type_name = type_name
        self.instance_id = instance_id


class WorkerLaunchError(WorkerProcessError):
    """Raised when the worker executable cannot be started."""


def _ignore_text(text: str) -> None:
    _ = text


def _ignore() -> None:
    return None


def _ignore_status(status: WorkerStatus, elapsed_ms: int) -> None:
    _ = status, elapsed_ms


@dataclass(slots=True)
class SpawnCallbacks:
    on_text_delta: Callable[[str], None] = _ignore_text
    on_tool_start: Callable[[], None] = _ignore
    on_status_change: Callable[[WorkerStatus, int], None] = _ignore_status
