import asyncio
from pathlib import Path

from agentfleet.definitions import DefinitionStore
from agentfleet.gate import GATE_MESSAGE, AdvisoryGate
from agentfleet.tools import FleetTools, build_tools, elapsed_seconds, format_summary


def _tools(make_orchestrator, tmp_path: Path, names=("scout", "coder")) -> FleetTools:
    directory = tmp_path / "agents"
    directory.mkdir(exist_ok=True)
    for name in names:
        (directory / f"{name}.md").write_text(
            f"---\nname: {name}\ndescription: {name} helper\nmodel: prov/{name}-model\n---\n"
            f"You are {name}.",
            encoding="utf-8",
        )
    return FleetTools(make_orchestrator(), DefinitionStore(directory))


def test_gate_refusal_arms_the_next_attempt() -> None:
    gate = AdvisoryGate()

    assert gate.try_pass() is False
    assert gate.try_pass() is True
    gate.consume()
    assert gate.is_open is False
    gate.mark_listed()
    assert gate.is_open is True


def test_spawn_is_gated_once_then_proceeds(make_orchestrator, tmp_path: Path, spawner) -> None:
    tools = _tools(make_orchestrator, tmp_path)

    async def _run() -> tuple[str, str, str]:
        first = await tools.agent_spawn("scout", "find tests")
        second = await tools.agent_spawn("scout", "find tests")
        third = await tools.agent_spawn("scout", "find more")
        return first, second, third

    first, second, third = asyncio.run(_run())

    assert first == GATE_MESSAGE
    assert second.startswith("scout #1 finished in 0s.")
    assert second.endswith("Result:\ndone: find tests")
    assert third == GATE_MESSAGE
    assert len(spawner.calls) == 1


def test_listing_opens_the_gate(make_orchestrator, tmp_path: Path) -> None:
    tools = _tools(make_orchestrator, tmp_path)

    async def _run() -> str:
        assert tools.agent_list() == "No active agents."
        return await tools.agent_spawn("coder", "implement")

    result = asyncio.run(_run())

    assert result.startswith("coder #1 finished")
    assert not tools.gate.checked


def test_spawn_unknown_agent_lists_available(make_orchestrator, tmp_path: Path) -> None:
    tools = _tools(make_orchestrator, tmp_path)
    tools.gate.mark_listed()

    result = asyncio.run(tools.agent_spawn("wizard", "magic"))

    assert result == 'Agent "wizard" not found. Available: coder, scout'


def test_spawn_parallel_joins_raw_results(make_orchestrator, tmp_path: Path) -> None:
    tools = _tools(make_orchestrator, tmp_path)
    tools.gate.mark_listed()

    result = asyncio.run(tools.agent_spawn_parallel(["scout", "coder"], "survey"))

    assert result == "done: survey\n\n---\n\ndone: survey"
    assert not tools.gate.checked


def test_spawn_parallel_rejects_unknown_before_spawning(
    make_orchestrator, tmp_path: Path, spawner
) -> None:
    tools = _tools(make_orchestrator, tmp_path)
    tools.gate.mark_listed()

    result = asyncio.run(tools.agent_spawn_parallel(["scout", "ghost"], "survey"))

    assert result.startswith('Agent "ghost" not found.')
    assert spawner.calls == []


def test_send_continues_latest_idle_without_gate(make_orchestrator, tmp_path: Path) -> None:
    tools = _tools(make_orchestrator, tmp_path)
    tools.gate.mark_listed()

    async def _run() -> str:
        await tools.agent_spawn_parallel(["scout", "scout"], "look")
        return await tools.agent_send("scout", "look closer")

    result = asyncio.run(_run())

    assert result.startswith("scout #2 (Turn 2) finished")
    assert result.endswith("done: look closer")
    assert tools.orchestrator.registry.get("scout", 1).turn_count == 1


def test_send_new_worker_reads_gate_without_arming(
    make_orchestrator, tmp_path: Path, spawner
) -> None:
    tools = _tools(make_orchestrator, tmp_path)

    async def _run() -> list[str]:
        replies = [
            await tools.agent_send("scout", "look", new=True),
            await tools.agent_send("scout", "look", new=True),
        ]
        tools.agent_list()
        replies.append(await tools.agent_send("scout", "look", new=True))
        return replies

    replies = asyncio.run(_run())

    assert replies[:2] == [GATE_MESSAGE, GATE_MESSAGE]
    assert replies[2].startswith("scout #1 finished")
    assert len(spawner.calls) == 1


def test_agent_list_formats(make_orchestrator, tmp_path: Path, make_definition) -> None:
    tools = _tools(make_orchestrator, tmp_path)
    orchestrator = tools.orchestrator
    for name, status in [("coder", "running"), ("scout", "done"), ("scout", "error")]:
        instance = orchestrator.create(make_definition(name), f"{name} work")
        instance.status = status
        orchestrator.registry.set(instance)

    compact = tools.agent_list()
    full = tools.agent_list("full")

    assert compact == "Running: coder#1 | Done: scout#1, scout#2"
    assert full.splitlines() == [
        "Active agents:",
        "scout #1 [DONE] (Turn 1) - scout work",
        "scout #2 [ERROR] (Turn 1) - scout work",
        "coder #1 [RUNNING] (Turn 1) - coder work",
    ]


def test_agent_remove_messages(make_orchestrator, tmp_path: Path, make_definition) -> None:
    tools = _tools(make_orchestrator, tmp_path)
    orchestrator = tools.orchestrator
    instance = orchestrator.create(make_definition("scout"), "task")
    instance.status = "done"
    orchestrator.registry.set(instance)

    assert tools.agent_remove("scout", 1) == "scout #1 removed."
    assert tools.agent_remove("scout", 1) == "No scout #1 found."


def test_agents_discover(make_orchestrator, tmp_path: Path) -> None:
    tools = _tools(make_orchestrator, tmp_path)

    assert tools.agents_discover().splitlines() == [
        "Available agents:",
        "coder (coder-model): coder helper",
        "scout (scout-model): scout helper",
    ]


def test_build_tools_is_disabled_inside_workers(make_orchestrator, tmp_path: Path) -> None:
    store = DefinitionStore(tmp_path)
    orchestrator = make_orchestrator()

    assert build_tools(orchestrator, store, environ={"AGENT_FLEET_DEPTH": "1"}) is None
    assert isinstance(build_tools(orchestrator, store, environ={}), FleetTools)


def test_summary_rounds_seconds_and_shows_later_turns(make_orchestrator, make_definition) -> None:
    orchestrator = make_orchestrator()
    instance = orchestrator.create(make_definition("scout"), "task")
    instance.elapsed_ms = 2500

    assert elapsed_seconds(1499) == 1
    assert format_summary(instance, "ok") == "scout #1 finished in 3s.\n\nResult:\nok"
    assert format_summary(instance, "ok", always_show_turn=True).startswith(
        "scout #1 (Turn 1) finished"
    )
    instance.turn_count = 3
    assert format_summary(instance, "ok").startswith("scout #1 (Turn 3) finished")
