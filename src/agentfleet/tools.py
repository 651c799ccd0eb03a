from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from typing import Literal

from agentfleet.backends.pi import DEPTH_ENV_VAR, is_nested_worker
from agentfleet.definitions import DefinitionStore, WorkerTypeDefinition
from agentfleet.gate import GATE_MESSAGE, AdvisoryGate
from agentfleet.models import WorkerInstance
from agentfleet.orchestrator import Orchestrator

RESULT_SEPARATOR = "\n\n---\n\n"


def elapsed_seconds(elapsed_ms: int) -> int:
    return int(elapsed_ms / 1000 + 0.5)


def format_summary(instance: WorkerInstance, result: str, *, always_show_turn: bool = False) -> str:
    turn = ""
    if always_show_turn or instance.turn_count > 1:
        turn = f" (Turn {instance.turn_count})"
    return (
        f"{instance.label}{turn} finished in {elapsed_seconds(instance.elapsed_ms)}s."
        f"\n\nResult:\n{result}"
    )


class FleetTools:
    """Text-in/text-out operations for a host agent driving the fleet.

    ``agent_spawn`` and ``agent_spawn_parallel`` arm the advisory gate when they
    refuse, so a retry passes. ``agent_send`` only reads it, so a refused send
    needs an ``agent_list`` first. Continuations never consult the gate.
    """

    def __init__(self, orchestrator: Orchestrator, definitions: DefinitionStore) -> None:
        self.orchestrator = orchestrator
        self.definitions = definitions

    @property
    def gate(self) -> AdvisoryGate:
        return self.orchestrator.gate

    def _not_found(self, name: str) -> str:
        available = ", ".join(self.definitions.available())
        return f'Agent "{name}" not found. Available: {available}'

    async def agent_spawn(
        self, agent: str, task: str, cancel: asyncio.Event | None = None
    ) -> str:
        if not self.gate.try_pass():
            return GATE_MESSAGE

        definition = self.definitions.get(agent)
        if definition is None:
            return self._not_found(agent)

        spawned = await self.orchestrator.spawn_single(definition, task, cancel)
        self.gate.consume()
        return format_summary(spawned.instance, spawned.result)

    async def agent_spawn_parallel(
        self, agents: Sequence[str], task: str, cancel: asyncio.Event | None = None
    ) -> str:
        if not self.gate.try_pass():
            return GATE_MESSAGE

        definitions: list[WorkerTypeDefinition] = []
        for name in agents:
            definition = self.definitions.get(name)
            if definition is None:
                return self._not_found(name)
            definitions.append(definition)

        batch = await self.orchestrator.spawn_parallel(definitions, task, cancel)
        self.gate.consume()
        return RESULT_SEPARATOR.join(batch.results)

    async def agent_send(
        self,
        agent: str,
        task: str,
        new: bool = False,
        cancel: asyncio.Event | None = None,
    ) -> str:
        definition = self.definitions.get(agent)
        if definition is None:
            return self._not_found(agent)

        if not new:
            target = self.orchestrator.latest_idle(agent)
            if target is not None:
                continued = await self.orchestrator.continue_instance(
                    agent, target.id, task, cancel
                )
                if continued.ok and continued.instance is not None:
                    return format_summary(
                        continued.instance, continued.result, always_show_turn=True
                    )

        if not self.gate.is_open:
            return GATE_MESSAGE

        spawned = await self.orchestrator.spawn_single(definition, task, cancel)
        self.gate.consume()
        return format_summary(spawned.instance, spawned.result)

    def agent_list(self, format: Literal["compact", "full"] = "compact") -> str:
        active = self.orchestrator.list_active()
        self.gate.mark_listed()

        if not active:
            return "No active agents."

        if format != "full":
            running = [item for item in active if item.status == "running"]
            finished = [item for item in active if item.status != "running"]
            parts: list[str] = []
            if running:
                parts.append(
                    "Running: " + ", ".join(f"{item.type_name}#{item.id}" for item in running)
                )
            if finished:
                parts.append(
                    "Done: " + ", ".join(f"{item.type_name}#{item.id}" for item in finished)
                )
            return " | ".join(parts)

        lines = [
            f"{item.label} [{item.status.upper()}] (Turn {item.turn_count}) - {item.task}"
            for item in active
        ]
        return "Active agents:\n" + "\n".join(lines)

    def agent_remove(self, agent: str, instance_id: int) -> str:
        removed = self.orchestrator.remove(agent, instance_id)
        if removed is None:
            return f"No {agent} #{instance_id} found."
        return f"{removed.label} removed."

    def agents_discover(self) -> str:
        definitions = self.definitions.load_all()
        if not definitions:
            return f"No agent definitions found in {self.definitions.directory}"
        lines = [
            f"{item.name} ({item.short_model}): {item.description}"
            for item in definitions.values()
        ]
        return "Available agents:\n" + "\n".join(lines)


def build_tools(
    orchestrator: Orchestrator,
    definitions: DefinitionStore,
    *,
    environ: Mapping[str, str] | None = None,
    depth_env_var: str = DEPTH_ENV_VAR,
) -> FleetTools | None:
    """Return the tool surface, or ``None`` inside a spawned worker."""
    if is_nested_worker(environ, depth_env_var):
        return None
    return FleetTools(orchestrator, definitions)
