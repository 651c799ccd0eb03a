from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from agentfleet.backends import PiSupervisor
from agentfleet.definitions import WorkerTypeDefinition
from agentfleet.orchestrator import Orchestrator
from agentfleet.state import PersistenceGateway, SessionJournal


class FakeStream:
    def __init__(self, chunks: list[bytes], closed: asyncio.Event) -> None:
        self._chunks = list(chunks)
        self._closed = closed

    async def read(self, size: int = -1) -> bytes:
        _ = size
        if self._chunks:
            return self._chunks.pop(0)
        await self._closed.wait()
        if self._chunks:
            return self._chunks.pop(0)
        return b""


class FakeProcess:
    """Stands in for ``asyncio.subprocess.Process``.

    With ``hold=True`` the pipes stay open until ``finish`` or ``terminate``.
    """

    pid = 4242

    def __init__(
        self,
        stdout: list[bytes] | None = None,
        stderr: list[bytes] | None = None,
        returncode: int = 0,
        hold: bool = False,
    ) -> None:
        self._exit = asyncio.Event()
        self._code = returncode
        self.stdout = FakeStream(stdout or [], self._exit)
        self.stderr = FakeStream(stderr or [], self._exit)
        self.returncode: int | None = None
        self.terminated = False
        if not hold:
            self._exit.set()

    @staticmethod
    def text_event(delta: str) -> bytes:
        payload = {
            "type": "message_update",
            "assistantMessageEvent": {"type": "text_delta", "delta": delta},
        }
        return (json.dumps(payload) + "\n").encode("utf-8")

    @staticmethod
    def tool_event() -> bytes:
        return b'{"type":"tool_execution_start","toolName":"read"}\n'

    def finish(self, code: int = 0) -> None:
        self._code = code
        self._exit.set()

    def terminate(self) -> None:
        self.terminated = True
        self._code = -15
        self._exit.set()

    async def wait(self) -> int:
        await self._exit.wait()
        self.returncode = self._code
        return self._code


class FakeSpawner:
    """Records every launch and returns whatever ``factory`` builds for the argv."""

    def __init__(self) -> None:
        self.calls: list[tuple[list[str], dict[str, Any]]] = []
        self.processes: list[FakeProcess] = []
        self.factory: Callable[[list[str]], FakeProcess] = lambda argv: FakeProcess(
            stdout=[FakeProcess.text_event(f"done: {argv[-1]}")]
        )

    async def __call__(self, *argv: str, **kwargs: Any) -> FakeProcess:
        self.calls.append((list(argv), kwargs))
        process = self.factory(list(argv))
        self.processes.append(process)
        return process


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture()
def fake_process() -> type[FakeProcess]:
    return FakeProcess


@pytest.fixture()
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def settle_loop() -> Callable[..., Any]:
    return settle


@pytest.fixture()
def make_definition() -> Callable[..., WorkerTypeDefinition]:
    def _make(name: str = "scout", **overrides: Any) -> WorkerTypeDefinition:
        values: dict[str, Any] = {
            "name": name,
            "description": f"{name} worker",
            "tools": "read,grep",
            "model": "openrouter/google/gemini-3-flash-preview",
            "system_prompt": f"You are the {name}.",
            "source_path": None,
        }
        values.update(overrides)
        return WorkerTypeDefinition(**values)

    return _make


@pytest.fixture()
def journal(tmp_path: Path) -> SessionJournal:
    return SessionJournal(tmp_path / "journals" / "default.jsonl")


@pytest.fixture()
def make_orchestrator(
    tmp_path: Path,
    spawner: FakeSpawner,
    clock: FakeClock,
    journal: SessionJournal,
    make_definition: Callable[..., WorkerTypeDefinition],
) -> Callable[..., Orchestrator]:
    def _make(
        *,
        known: tuple[str, ...] = ("scout", "coder", "reviewer"),
        stagger_seconds: float = 0.0,
        debounce_seconds: float = 5.0,
        on_refresh: Callable[[], None] | None = None,
    ) -> Orchestrator:
        definitions = {name: make_definition(name) for name in known}
        return Orchestrator(
            resolve=lambda name: definitions.get(name.lower()),
            supervisor=PiSupervisor("pi", spawner=spawner, clock=clock, tick_seconds=0.01),
            persistence=PersistenceGateway(journal, debounce_seconds=debounce_seconds),
            sessions_dir=tmp_path / "sessions",
            on_refresh=on_refresh,
            stagger_seconds=stagger_seconds,
        )

    return _make
