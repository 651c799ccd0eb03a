from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import click

from agentfleet.backends import PiSupervisor, SpawnCallbacks, is_nested_worker
from agentfleet.config import FleetConfig, load_config, save_config
from agentfleet.definitions import (
    DefinitionNotFoundError,
    DefinitionStore,
    WorkerTypeDefinition,
)
from agentfleet.orchestrator import Orchestrator
from agentfleet.state import PersistenceGateway, SessionJournal
from agentfleet.tools import RESULT_SEPARATOR, elapsed_seconds, format_summary

T = TypeVar("T")


@dataclass(slots=True)
class Runtime:
    config_path: Path
    config: FleetConfig
    session: str
    definitions: DefinitionStore
    journal: SessionJournal
    orchestrator: Orchestrator


def _resolve_config_path(config_value: str) -> Path:
    config_path = Path(config_value).expanduser()
    if not config_path.is_absolute():
        config_path = Path.cwd() / config_path
    return config_path.resolve()


def _load_runtime(config_path: Path, session: str) -> Runtime:
    config = load_config(config_path)
    definitions = DefinitionStore(
        config.definitions.directory_path(),
        ttl_seconds=config.definitions.cache_ttl_seconds,
        default_tools=config.definitions.default_tools,
        default_model=config.definitions.default_model,
    )
    journal = SessionJournal(config.persistence.journal_path(session))
    orchestrator = Orchestrator(
        resolve=definitions.get,
        supervisor=PiSupervisor(
            config.runner.binary,
            tick_seconds=config.runner.tick_seconds,
            depth_env_var=config.runner.depth_env_var,
        ),
        persistence=PersistenceGateway(
            journal, debounce_seconds=config.persistence.debounce_seconds
        ),
        sessions_dir=config.persistence.sessions_path(),
        stagger_seconds=config.orchestration.stagger_seconds,
        priority=config.orchestration.priority,
    )
    return Runtime(
        config_path=config_path,
        config=config,
        session=session,
        definitions=definitions,
        journal=journal,
        orchestrator=orchestrator,
    )


def _run_session(
    runtime: Runtime,
    action: Callable[[Orchestrator, asyncio.Event], Awaitable[T]],
) -> T:
    """Restore the session journal, run ``action`` and flush pending state."""

    async def _main() -> T:
        cancel = asyncio.Event()
        loop = asyncio.get_running_loop()
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signal.SIGINT, cancel.set)
        orchestrator = runtime.orchestrator
        orchestrator.restore()
        try:
            return await action(orchestrator, cancel)
        finally:
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(signal.SIGINT)
            orchestrator.shutdown()

    return asyncio.run(_main())


def _stream_callbacks(stream: bool) -> SpawnCallbacks | None:
    if not stream:
        return None
    return SpawnCallbacks(on_text_delta=lambda text: click.echo(text, nl=False))


def _require_definition(runtime: Runtime, name: str) -> WorkerTypeDefinition:
    try:
        return runtime.definitions.require(name)
    except DefinitionNotFoundError as exc:
        raise click.ClickException(str(exc)) from exc


def _ensure_top_level(runtime: Runtime) -> None:
    if is_nested_worker(var=runtime.config.runner.depth_env_var):
        raise click.ClickException("Spawning workers is disabled inside a worker process.")


def session_options(func: Callable[..., Any]) -> Callable[..., Any]:
    func = click.option("--session", default="default", show_default=True)(func)
    func = click.option("--config", "config_value", default="agent-fleet.toml", show_default=True)(
        func
    )
    return func


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Spawn, continue and track pi worker subprocesses."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--config", "config_value", default="agent-fleet.toml", show_default=True)
def init_command(config_value: str) -> None:
    config_path = _resolve_config_path(config_value)
    config = load_config(config_path)
    save_config(config_path, config)
    config.definitions.directory_path().mkdir(parents=True, exist_ok=True)
    click.echo(f"Config: {config_path}")
    click.echo(f"Definitions: {config.definitions.directory_path()}")
    click.echo(f"Journals: {config.persistence.journal_path('default').parent}")


@cli.command("agents")
@session_options
def agents_command(config_value: str, session: str) -> None:
    runtime = _load_runtime(_resolve_config_path(config_value), session)
    definitions = runtime.definitions.load_all()
    if not definitions:
        click.echo(f"No agents found in {runtime.definitions.directory}")
        return
    for definition in definitions.values():
        click.echo(f"• {definition.name} ({definition.short_model})")
        if definition.description:
            click.echo(f"  {definition.description}")


@cli.command("spawn")
@click.argument("agent")
@click.argument("task")
@click.option("--stream", is_flag=True, default=False, help="Echo worker text as it arrives.")
@session_options
def spawn_command(agent: str, task: str, stream: bool, config_value: str, session: str) -> None:
    runtime = _load_runtime(_resolve_config_path(config_value), session)
    _ensure_top_level(runtime)
    definition = _require_definition(runtime, agent)

    async def _action(orchestrator: Orchestrator, cancel: asyncio.Event) -> str:
        spawned = await orchestrator.spawn_single(
            definition, task, cancel, _stream_callbacks(stream)
        )
        return format_summary(spawned.instance, spawned.result)

    click.echo(_run_session(runtime, _action))


@cli.command("parallel")
@click.argument("agents")
@click.argument("task")
@click.option("--stream", is_flag=True, default=False, help="Echo worker text as it arrives.")
@session_options
def parallel_command(agents: str, task: str, stream: bool, config_value: str, session: str) -> None:
    runtime = _load_runtime(_resolve_config_path(config_value), session)
    _ensure_top_level(runtime)
    names = [name.strip() for name in agents.split(",") if name.strip()]
    if not names:
        raise click.UsageError("Provide a comma-separated list of agent names.")
    definitions = [_require_definition(runtime, name) for name in names]

    async def _action(orchestrator: Orchestrator, cancel: asyncio.Event) -> str:
        batch = await orchestrator.spawn_parallel(
            definitions, task, cancel, _stream_callbacks(stream)
        )
        return RESULT_SEPARATOR.join(
            format_summary(instance, result)
            for instance, result in zip(batch.instances, batch.results, strict=True)
        )

    click.echo(_run_session(runtime, _action))


@cli.command("continue")
@click.argument("agent")
@click.argument("instance_id", type=int)
@click.argument("task")
@click.option("--stream", is_flag=True, default=False, help="Echo worker text as it arrives.")
@session_options
def continue_command(
    agent: str, instance_id: int, task: str, stream: bool, config_value: str, session: str
) -> None:
    runtime = _load_runtime(_resolve_config_path(config_value), session)
    _ensure_top_level(runtime)

    async def _action(orchestrator: Orchestrator, cancel: asyncio.Event):
        return await orchestrator.continue_instance(
            agent, instance_id, task, cancel, _stream_callbacks(stream)
        )

    continued = _run_session(runtime, _action)
    if continued.outcome == "not_found":
        raise click.ClickException(f"No {agent} #{instance_id} found.")
    if continued.outcome == "still_running":
        raise click.ClickException(f"{agent} #{instance_id} is still running.")
    click.echo(format_summary(continued.instance, continued.result, always_show_turn=True))


@cli.command("send")
@click.argument("agent")
@click.argument("task")
@click.option(
    "--new", "force_new", is_flag=True, default=False, help="Always spawn a fresh worker."
)
@click.option("--stream", is_flag=True, default=False, help="Echo worker text as it arrives.")
@session_options
def send_command(
    agent: str, task: str, force_new: bool, stream: bool, config_value: str, session: str
) -> None:
    runtime = _load_runtime(_resolve_config_path(config_value), session)
    _ensure_top_level(runtime)
    definition = _require_definition(runtime, agent)

    async def _action(orchestrator: Orchestrator, cancel: asyncio.Event) -> str:
        callbacks = _stream_callbacks(stream)
        target = None if force_new else orchestrator.latest_idle(agent)
        if target is not None:
            continued = await orchestrator.continue_instance(
                agent, target.id, task, cancel, callbacks
            )
            if continued.ok and continued.instance is not None:
                return format_summary(continued.instance, continued.result, always_show_turn=True)
        spawned = await orchestrator.spawn_single(definition, task, cancel, callbacks)
        return format_summary(spawned.instance, spawned.result)

    click.echo(_run_session(runtime, _action))


@cli.command("list")
@click.option("--full", is_flag=True, default=False)
@session_options
def list_command(full: bool, config_value: str, session: str) -> None:
    runtime = _load_runtime(_resolve_config_path(config_value), session)

    async def _action(orchestrator: Orchestrator, cancel: asyncio.Event):
        _ = cancel
        return orchestrator.list_active()

    active = _run_session(runtime, _action)
    if not active:
        click.echo("No active agents.")
        return
    for instance in active:
        line = f"{instance.label:<20} {instance.status.upper():<8} turn {instance.turn_count}"
        line += f"  {elapsed_seconds(instance.elapsed_ms)}s  tools {instance.tool_count}"
        if full:
            line += f"  {instance.task}"
        click.echo(line)


@cli.command("remove")
@click.argument("agent")
@click.argument("instance_id", type=int)
@session_options
def remove_command(agent: str, instance_id: int, config_value: str, session: str) -> None:
    runtime = _load_runtime(_resolve_config_path(config_value), session)

    async def _action(orchestrator: Orchestrator, cancel: asyncio.Event):
        _ = cancel
        return orchestrator.remove(agent, instance_id)

    removed = _run_session(runtime, _action)
    if removed is None:
        raise click.ClickException(f"No {agent} #{instance_id} found.")
    click.echo(f"{removed.label} removed.")


@cli.command("clear")
@session_options
def clear_command(config_value: str, session: str) -> None:
    runtime = _load_runtime(_resolve_config_path(config_value), session)

    async def _action(orchestrator: Orchestrator, cancel: asyncio.Event):
        _ = cancel
        return orchestrator.clear_all()

    cleared = _run_session(runtime, _action)
    if cleared.count == 0:
        click.echo("No agents to clear.")
        return
    message = f"Cleared {cleared.count} agent{'s' if cleared.count != 1 else ''}"
    if cleared.killed:
        message += f" ({cleared.killed} killed)"
    click.echo(message + ".")


@cli.command("status")
@session_options
def status_command(config_value: str, session: str) -> None:
    runtime = _load_runtime(_resolve_config_path(config_value), session)

    async def _action(orchestrator: Orchestrator, cancel: asyncio.Event):
        _ = cancel
        return orchestrator.snapshot().to_dict()

    payload = _run_session(runtime, _action)
    payload["session"] = runtime.session
    payload["journal"] = str(runtime.journal.path)
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
