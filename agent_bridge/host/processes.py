"""Agent subprocess lifecycle on the host side.

Each process is registered under a caller-chosen id and a channel name
(``agent``, ``codex``, ``copilot``, ...). Output lines are emitted on the
event bus as ``<channel>:stdout:<id>`` and ``<channel>:stderr:<id>``, in
the order read, followed by one ``<channel>:close:<id>`` event.
"""
from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

from agent_bridge.errors import ProcessNotFoundError, SpawnError

from .event_bus import EventBus

logger = logging.getLogger(__name__)

# Claude and Codex emit whole tool results on one line.
STREAM_LIMIT = 16 * 1024 * 1024

LineHandler = Callable[[str], None]


@dataclass
class ManagedProcess:
    process_id: str
    channel: str
    proc: asyncio.subprocess.Process
    log_file: IO[str] | None = None
    watcher: asyncio.Task | None = field(default=None, repr=False)

    @property
    def running(self) -> bool:
        return self.proc.returncode is None


class ProcessManager:
    """Spawns agent CLIs and forwards their output as host events."""

    def __init__(self, events: EventBus, *, stop_timeout: float = 5.0) -> None:
        self._events = events
        self._stop_timeout = stop_timeout
        self._processes: dict[str, ManagedProcess] = {}

    async def spawn(
        self,
        process_id: str,
        channel: str,
        argv: Sequence[str],
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        stdin_data: str | None = None,
        log_path: str | Path | None = None,
        stdout_handler: LineHandler | None = None,
    ) -> int:
        """Start *argv* and return its pid.

        Raises SpawnError when the binary is missing or the exec fails.
        An existing process under the same id is stopped first.
        """
        existing = self._processes.get(process_id)
        if existing is not None and existing.running:
            logger.info("Replacing running process id=%s", process_id)
            await self.stop(process_id)

        program = argv[0]
        merged_env = dict(os.environ)
        if env:
            merged_env.update(env)
        try:
            # argv is passed as a list, no shell
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd or None,
                env=merged_env,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError as exc:
            logger.error("'%s' CLI not found (id=%s)", program, process_id)
            raise SpawnError(program, f"Failed to spawn {program}: {exc}") from exc
        except OSError as exc:
            logger.error("Failed to spawn %s (id=%s): %s", program, process_id, exc)
            raise SpawnError(program, f"Failed to spawn {program}: {exc}") from exc

        log_file = None
        if log_path is not None:
            path = Path(log_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            log_file = open(path, "a", encoding="utf-8")

        managed = ManagedProcess(process_id, channel, proc, log_file)
        self._processes[process_id] = managed
        logger.info(
            "Spawned %s id=%s pid=%d cwd=%s", program, process_id, proc.pid, cwd
        )

        if stdin_data is not None:
            await self._write(managed, stdin_data)

        managed.watcher = asyncio.create_task(
            self._watch(managed, stdout_handler),
            name=f"process-watch-{process_id}",
        )
        return proc.pid

    async def _watch(
        self, managed: ManagedProcess, stdout_handler: LineHandler | None
    ) -> None:
        prefix = f"{managed.channel}:"
        suffix = f":{managed.process_id}"
        await asyncio.gather(
            self._pump(managed, managed.proc.stdout, f"{prefix}stdout{suffix}", stdout_handler),
            self._pump(managed, managed.proc.stderr, f"{prefix}stderr{suffix}", None),
        )
        code = await managed.proc.wait()
        logger.info(
            "Process exited id=%s pid=%d code=%s",
            managed.process_id, managed.proc.pid, code,
        )
        if managed.log_file is not None:
            managed.log_file.close()
            managed.log_file = None
        if self._processes.get(managed.process_id) is managed:
            del self._processes[managed.process_id]
        self._events.emit(
            f"{prefix}close{suffix}", {"code": code, "pid": managed.proc.pid}
        )

    async def _pump(
        self,
        managed: ManagedProcess,
        stream: asyncio.StreamReader | None,
        event_type: str,
        handler: LineHandler | None,
    ) -> None:
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                logger.warning("Oversized line dropped on %s", event_type)
                continue
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if not line:
                continue
            if managed.log_file is not None:
                managed.log_file.write(line + "\n")
                managed.log_file.flush()
            self._events.emit(event_type, line)
            if handler is not None:
                try:
                    handler(line)
                except Exception:
                    logger.exception("Line handler failed on %s", event_type)

    async def write(self, process_id: str, data: str) -> None:
        """Write one line to the process's stdin."""
        managed = self._processes.get(process_id)
        if managed is None or not managed.running:
            raise ProcessNotFoundError(process_id)
        await self._write(managed, data)

    async def _write(self, managed: ManagedProcess, data: str) -> None:
        stdin = managed.proc.stdin
        if stdin is None:
            raise ProcessNotFoundError(managed.process_id)
        if not data.endswith("\n"):
            data += "\n"
        stdin.write(data.encode("utf-8"))
        await stdin.drain()

    async def stop(self, process_id: str) -> bool:
        """Terminate the process, killing it after ``stop_timeout``.

        Returns False when nothing was running under *process_id*.
        """
        managed = self._processes.get(process_id)
        if managed is None:
            return False
        proc = managed.proc
        if proc.returncode is None:
            try:
                proc.terminate()
                try:
                    await asyncio.wait_for(proc.wait(), timeout=self._stop_timeout)
                except asyncio.TimeoutError:
                    logger.warning(
                        "Process id=%s ignored SIGTERM, killing", process_id
                    )
                    proc.kill()
                    await proc.wait()
            except ProcessLookupError:
                pass
        if managed.watcher is not None:
            await managed.watcher
        return True

    def is_running(self, process_id: str) -> bool:
        managed = self._processes.get(process_id)
        return managed is not None and managed.running

    def process_ids(self) -> list[str]:
        return list(self._processes)

    async def stop_all(self) -> None:
        for process_id in list(self._processes):
            try:
                await self.stop(process_id)
            except Exception as exc:
                logger.error("Error stopping process '%s': %s", process_id, exc)
