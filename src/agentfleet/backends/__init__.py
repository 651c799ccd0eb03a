from agentfleet.backends.base import (
    ProcessSpawner,
    SpawnCallbacks,
    WorkerLaunchError,
    WorkerProcessError,
)
from agentfleet.backends.events import (
    LineBuffer,
    StreamEvent,
    TextDelta,
    ToolExecutionStart,
    UnrecognizedEvent,
    parse_stream_line,
)
from agentfleet.backends.pi import (
    PiSupervisor,
    is_nested_worker,
    terminate_process,
    worker_depth,
)

__all__ = [
    "LineBuffer",
    "PiSupervisor",
    "ProcessSpawner",
    "SpawnCallbacks",
    "StreamEvent",
    "TextDelta",
    "ToolExecutionStart",
    "UnrecognizedEvent",
    "WorkerLaunchError",
    "WorkerProcessError",
    "is_nested_worker",
    "parse_stream_line",
    "terminate_process",
    "worker_depth",
]
