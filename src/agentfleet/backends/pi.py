from __future__ import annotations

import asyncio
import codecs
import logging
import os
import time
from collections.abc import Callable, Mapping
from typing import Any

from agentfleet.backends.base import (
    ProcessSpawner,
    SpawnCallbacks,
    WorkerLaunchError,
)
from agentfleet.backends.events import (
    LineBuffer,
    TextDelta,
    ToolExecutionStart,
    UnrecognizedEvent,
    parse_stream_line,
)
from agentfleet.models import WorkerInstance

logger = logging.getLogger(__name__)

DEPTH_ENV_VAR = "AGENT_FLEET_DEPTH"


def worker_depth(environ: Mapping[str, str] | None = None, var: str = DEPTH_ENV_VAR) -> int:
    env = os.environ if environ is None else environ
    try:
        return max(0, int(env.get(var, "0") or "0"))
    except ValueError:
        return 0


def is_nested_worker(environ: Mapping[str, str] | None = None, var: str = DEPTH_ENV_VAR) -> bool:
    return worker_depth(environ, var) > 0


def terminate_process(process: Any) -> bool:
    """Send SIGTERM unless the process has already been reaped."""
    if process is None or process.returncode is not None:
        return False
    try:
        process.terminate()
    except ProcessLookupError:
        return False
    return True


class PiSupervisor:
    """Runs one ``pi`` subprocess per worker activation and folds its JSON stream
    into the worker record.

    The supervisor keeps no state between calls, so activations for different
    instances (or later turns of one instance) can run concurrently.
    """

    def __init__(
        self,
        binary: str = "pi",
        *,
        spawner: ProcessSpawner | None = None,
        clock: Callable[[], float] = time.monotonic,
        tick_seconds: float = 1.0,
        depth_env_var: str = DEPTH_ENV_VAR,
        read_size: int = 65536,
    ) -> None:
        self.binary = binary
        self.tick_seconds = tick_seconds
        self.depth_env_var = depth_env_var
        self.read_size = read_size
        self._spawner = spawner
        self._clock = clock

    def build_command(self, instance: WorkerInstance, task: str) -> list[str]:
        definition = instance.definition
        return [
            self.binary,
            "--mode",
            "json",
            "-p",
            "--session",
            instance.session_file,
            "--no-extensions",
            "--model",
            definition.model,
            "--tools",
            definition.tools,
            "--thinking",
            "off",
            "--append-system-prompt",
            definition.system_prompt,
            task,
        ]

    def build_env(self) -> dict[str, str]:
        env = os.environ.copy()
        env[self.depth_env_var] = str(worker_depth(env, self.depth_env_var) + 1)
        return env

    def _elapsed_ms(self, start: float) -> int:
        return max(0, int((self._clock() - start) * 1000))

    async def _launch(self, instance: WorkerInstance, command: list[str]) -> Any:
        spawner = self._spawner or asyncio.create_subprocess_exec
        try:
            return await spawner(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.build_env(),
            )
        except OSError as exc:
            raise WorkerLaunchError(
                str(exc) or f"failed to start {self.binary}",
                type_name=instance.type_name,
                instance_id=instance.id,
            ) from exc

    @staticmethod
    def _handle_line(instance: WorkerInstance, line: str, callbacks: SpawnCallbacks) -> None:
        event = parse_stream_line(line)
        if event is None:
            if line.strip():
                logger.debug("%s: discarded non-JSON line: %.200s", instance.label, line)
            return
        if isinstance(event, TextDelta):
            instance.output_chunks.append(event.delta)
            callbacks.on_text_delta(event.delta)
        elif isinstance(event, ToolExecutionStart):
            instance.tool_count += 1
            callbacks.on_tool_start()
        elif isinstance(event, UnrecognizedEvent):
            pass

    async def _pump_stdout(
        self,
        process: Any,
        instance: WorkerInstance,
        callbacks: SpawnCallbacks,
        buffer: LineBuffer,
    ) -> None:
        if process.stdout is None:
            return
        while True:
            chunk = await process.stdout.read(self.read_size)
            if not chunk:
                break
            for line in buffer.feed(chunk):
                self._handle_line(instance, line, callbacks)

    async def _pump_stderr(
        self,
        process: Any,
        instance: WorkerInstance,
        callbacks: SpawnCallbacks,
    ) -> None:
        if process.stderr is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await process.stderr.read(self.read_size)
            if not chunk:
                break
            text = decoder.decode(chunk)
            if text.strip():
                instance.output_chunks.append(text)
                callbacks.on_text_delta(text)

    async def _tick(self, instance: WorkerInstance, start: float) -> None:
        while True:
            await asyncio.sleep(self.tick_seconds)
            instance.elapsed_ms = self._elapsed_ms(start)

    @staticmethod
    async def _watch_cancel(instance: WorkerInstance, process: Any, cancel: asyncio.Event) -> None:
        await cancel.wait()
        if terminate_process(process):
            logger.info("Terminating %s on cancellation", instance.label)

    async def supervise(
        self,
        instance: WorkerInstance,
        task: str,
        callbacks: SpawnCallbacks | None = None,
        cancel: asyncio.Event | None = None,
    ) -> str:
        callbacks = callbacks or SpawnCallbacks()
        command = self.build_command(instance, task)
        start = self._clock()

        try:
            process = await self._launch(instance, command)
        except WorkerLaunchError as exc:
            message = f"Error: {exc}"
            instance.status = "error"
            instance.process = None
            instance.output_chunks.append(message)
            logger.warning("Could not start %s: %s", instance.label, exc)
            callbacks.on_status_change("error", instance.elapsed_ms)
            return message

        instance.process = process
        logger.info(
            "Spawned %s (turn %d, pid %s)",
            instance.label,
            instance.turn_count,
            getattr(process, "pid", None),
        )

        buffer = LineBuffer()
        ticker = asyncio.create_task(self._tick(instance, start))
        watcher = (
            asyncio.create_task(self._watch_cancel(instance, process, cancel))
            if cancel is not None
            else None
        )
        pumps = [
            asyncio.create_task(self._pump_stdout(process, instance, callbacks, buffer)),
            asyncio.create_task(self._pump_stderr(process, instance, callbacks)),
        ]
        try:
            await asyncio.gather(*pumps)
            return_code = await process.wait()
        except asyncio.CancelledError:
            terminate_process(process)
            instance.process = None
            raise
        except Exception as exc:
            logger.warning("Stopping %s after stream handling failed: %r", instance.label, exc)
            terminate_process(process)
            for pump in pumps:
                pump.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)
            await process.wait()
            instance.elapsed_ms = self._elapsed_ms(start)
            instance.status = "error"
            instance.process = None
            callbacks.on_status_change("error", instance.elapsed_ms)
            raise
        finally:
            ticker.cancel()
            if watcher is not None:
                watcher.cancel()
            for pump in pumps:
                pump.cancel()

        remainder = buffer.flush()
        if remainder.strip():
            self._handle_line(instance, remainder, callbacks)

        instance.elapsed_ms = self._elapsed_ms(start)
        instance.status = "done" if return_code == 0 else "error"
        instance.process = None
        logger.info(
            "%s exited with code %s after %d ms (%s)",
            instance.label,
            return_code,
            instance.elapsed_ms,
            instance.status,
        )
        callbacks.on_status_change(instance.status, instance.elapsed_ms)
        return instance.result_text()
