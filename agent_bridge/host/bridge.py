"""Host command table.

``HostBridge.invoke(command, args)`` is the native call mechanism behind
both transports: ``LocalTransport`` calls it in-process, ``HostServer``
exposes it as ``POST /api/invoke/<command>``. Argument keys are camelCase
to match the network wire format.

Commands:
    send_message, agent_stdin, stop_agent            (Claude, channel ``agent``)
    start_codex_server, codex_stdin, stop_codex_server
    start_copilot_server, copilot_stdin, stop_copilot_server
    start_gemini_server, stop_gemini_server
    start_opencode_server, stop_opencode_server
    get_command_prefixes, are_commands_safe, check_cli_available
"""
from __future__ import annotations

import logging
import socket
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from agent_bridge.agents.events import event_to_dict
from agent_bridge.approval import ApprovalPolicy, are_commands_safe, prefixes_of
from agent_bridge.config import BridgeConfig
from agent_bridge.errors import UnknownCommandError

from . import spawn
from .claude_parser import ClaudeStreamParser
from .event_bus import EventBus
from .processes import ProcessManager

logger = logging.getLogger(__name__)

CommandHandler = Callable[[dict[str, Any]], Awaitable[Any]]


def _require(args: dict[str, Any], key: str) -> Any:
    value = args.get(key)
    if value is None or value == "":
        raise ValueError(f"Missing required argument: {key}")
    return value


def _log_path(args: dict[str, Any], default_id: str) -> Path | None:
    log_dir = args.get("logDir")
    if not log_dir:
        return None
    return Path(log_dir) / f"{args.get('logId') or default_id}.log"


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class HostBridge:
    """Owns the host event bus, the agent processes and the command table."""

    def __init__(
        self,
        config: BridgeConfig | None = None,
        *,
        events: EventBus | None = None,
        processes: ProcessManager | None = None,
    ) -> None:
        self.config = config or BridgeConfig()
        self.events = events or EventBus()
        self.processes = processes or ProcessManager(
            self.events, stop_timeout=self.config.process_stop_timeout
        )
        self.policy = ApprovalPolicy(
            extra_safe_commands=self.config.safe_commands
        )
        self._commands: dict[str, CommandHandler] = {}
        self._register_builtin_commands()

    # ── Dispatch ──

    def register(self, name: str, handler: CommandHandler) -> None:
        self._commands[name] = handler

    def command_names(self) -> list[str]:
        return sorted(self._commands)

    async def invoke(self, command: str, args: dict[str, Any] | None = None) -> Any:
        handler = self._commands.get(command)
        if handler is None:
            raise UnknownCommandError(command)
        logger.debug("invoke %s keys=%s", command, sorted((args or {}).keys()))
        return await handler(args or {})

    async def shutdown(self) -> None:
        await self.processes.stop_all()

    def _binary(self, kind: str, args: dict[str, Any]) -> str:
        configured = args.get(f"{kind}Path") or args.get("agentPath")
        if not configured:
            configured = self.config.agent_paths.get(kind)
        return spawn.resolve_binary(kind, configured)

    def _register_builtin_commands(self) -> None:
        self.register("send_message", self._send_message)
        self.register("agent_stdin", self._agent_stdin)
        self.register("stop_agent", self._stop_agent)
        for kind in ("codex", "copilot"):
            self.register(f"start_{kind}_server", self._make_start_server(kind))
            self.register(f"{kind}_stdin", self._make_stdin(kind))
            self.register(f"stop_{kind}_server", self._stop_server)
        self.register("start_gemini_server", self._start_gemini)
        self.register("stop_gemini_server", self._stop_server)
        self.register("start_opencode_server", self._start_opencode)
        self.register("stop_opencode_server", self._stop_server)
        self.register("get_command_prefixes", self._get_command_prefixes)
        self.register("are_commands_safe", self._are_commands_safe)
        self.register("check_cli_available", self._check_cli_available)

    # ── Claude (pre-parsed events on agent:event:<id>) ──

    async def _send_message(self, args: dict[str, Any]) -> dict[str, Any]:
        conversation_id = _require(args, "conversationId")
        prompt = _require(args, "prompt")
        frame = spawn.claude_user_frame(prompt)
        if self.processes.is_running(conversation_id):
            await self.processes.write(conversation_id, frame)
            return {"spawned": False}

        parser = ClaudeStreamParser(args.get("sessionId"))

        def on_line(line: str) -> None:
            for event in parser.parse_line(line):
                self.events.emit(f"agent:event:{conversation_id}", event_to_dict(event))

        argv = spawn.claude_argv(
            self._binary("claude", args),
            session_id=args.get("sessionId"),
            model=args.get("modelVersion"),
            permission_mode=args.get("permissionMode"),
        )
        pid = await self.processes.spawn(
            conversation_id,
            "agent",
            argv,
            cwd=args.get("workingDir"),
            stdin_data=frame,
            log_path=_log_path(args, conversation_id),
            stdout_handler=on_line,
        )
        return {"spawned": True, "pid": pid}

    async def _agent_stdin(self, args: dict[str, Any]) -> None:
        await self.processes.write(_require(args, "conversationId"), _require(args, "data"))

    async def _stop_agent(self, args: dict[str, Any]) -> bool:
        return await self.processes.stop(_require(args, "conversationId"))

    # ── Long-lived JSON-RPC servers (codex, copilot) ──

    def _make_start_server(self, kind: str) -> CommandHandler:
        build = spawn.codex_argv if kind == "codex" else spawn.copilot_argv

        async def start(args: dict[str, Any]) -> dict[str, Any]:
            server_id = _require(args, "serverId")
            argv = build(self._binary(kind, args), model=args.get("modelVersion"))
            pid = await self.processes.spawn(
                server_id,
                kind,
                argv,
                cwd=args.get("workingDir"),
                log_path=_log_path(args, server_id),
            )
            return {"pid": pid}

        return start

    def _make_stdin(self, kind: str) -> CommandHandler:
        async def write(args: dict[str, Any]) -> None:
            await self.processes.write(_require(args, "serverId"), _require(args, "data"))

        return write

    async def _stop_server(self, args: dict[str, Any]) -> bool:
        return await self.processes.stop(_require(args, "serverId"))

    # ── One-shot and HTTP agents ──

    async def _start_gemini(self, args: dict[str, Any]) -> dict[str, Any]:
        server_id = _require(args, "serverId")
        argv = spawn.gemini_argv(
            self._binary("gemini", args),
            _require(args, "prompt"),
            session_id=args.get("sessionId"),
            model=args.get("modelVersion"),
            approval_mode=args.get("approvalMode"),
        )
        pid = await self.processes.spawn(
            server_id,
            "gemini",
            argv,
            cwd=args.get("workingDir"),
            log_path=_log_path(args, server_id),
        )
        return {"pid": pid}

    async def _start_opencode(self, args: dict[str, Any]) -> dict[str, Any]:
        server_id = _require(args, "serverId")
        port = int(args.get("port") or _free_port())
        argv = spawn.opencode_argv(
            self._binary("opencode", args), port, cors_origin=args.get("corsOrigin")
        )
        pid = await self.processes.spawn(
            server_id,
            "opencode",
            argv,
            cwd=args.get("workingDir"),
            log_path=_log_path(args, server_id),
        )
        return {"pid": pid, "port": port}

    # ── Approval helpers ──

    async def _get_command_prefixes(self, args: dict[str, Any]) -> list[str] | None:
        return prefixes_of(args.get("command"))

    async def _are_commands_safe(self, args: dict[str, Any]) -> bool:
        prefixes = args.get("prefixes") or []
        return are_commands_safe(prefixes, self.policy.safe_commands)

    async def _check_cli_available(self, args: dict[str, Any]) -> dict[str, Any]:
        kind = _require(args, "kind")
        binary = self._binary(kind, args)
        return {"available": spawn.is_binary_available(binary), "path": binary}
