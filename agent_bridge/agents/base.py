"""Abstract base for agent protocol adapters.

Each adapter drives one kind of agent CLI (Claude, Codex, Copilot,
Gemini, OpenCode) through a Transport and translates its wire protocol
into canonical ``AgentEvent`` objects. Per-chat state lives in a
``ChatRegistry`` owned by the adapter instance.
"""
from __future__ import annotations

import abc
import asyncio
import enum
import itertools
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any

from agent_bridge.approval import (
    SCOPE_PREFIX,
    SCOPE_TOOL,
    ApprovalContext,
    ApprovalPolicy,
)
from agent_bridge.config import BridgeConfig
from agent_bridge.errors import (
    ApprovalConflictError,
    BridgeError,
    InvokeError,
    ProtocolError,
    SpawnError,
    TransportError,
)
from agent_bridge.transport.base import Transport, Unsubscribe

from .availability import AvailabilityRegistry, is_not_found_error
from .events import AgentEvent, PlanApproval, Question, SessionIdAssigned, ToolApproval

logger = logging.getLogger(__name__)

EventListener = Callable[[AgentEvent], None]
DoneListener = Callable[[], None]
PayloadHandler = Callable[["ChatSession", Any], None]


class ChatState(str, enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass
class TurnOptions:
    """Per-message settings passed through ``send_message``."""
    work_dir: str
    log_dir: str | None = None
    model_version: str | None = None
    permission_mode: str | None = None


@dataclass
class ApprovalRecord:
    """A pending approval ask and the raw wire id needed to answer it."""
    event: ToolApproval | PlanApproval | Question
    wire_id: Any


@dataclass
class ChatSession:
    """State of one conversation inside one adapter."""

    chat_id: str
    work_dir: str | None = None
    state: ChatState = ChatState.IDLE
    session_id: str | None = None
    process_id: str | None = None
    process_alive: bool = False
    pending_requests: dict[int, asyncio.Future] = field(default_factory=dict)
    active_task_stack: list[str] = field(default_factory=list)
    approvals: dict[str, ApprovalRecord] = field(default_factory=dict)
    approval_context: ApprovalContext = field(default_factory=ApprovalContext)
    event_callbacks: dict[int, EventListener] = field(default_factory=dict)
    done_callbacks: dict[int, DoneListener] = field(default_factory=dict)
    unsubscribers: list[Unsubscribe] = field(default_factory=list)
    listeners_attached: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def running(self) -> bool:
        return self.state in (ChatState.STARTING, ChatState.RUNNING)

    @property
    def is_new_session(self) -> bool:
        """True until the agent has assigned a session or thread id.

        This is the only signal used to decide whether ``init_prompt``
        is prepended to a message.
        """
        return self.session_id is None

    @property
    def parent_tool_use_id(self) -> str | None:
        return self.active_task_stack[-1] if self.active_task_stack else None


class ChatRegistry:
    """Chat id → ChatSession for one adapter."""

    def __init__(self) -> None:
        self._chats: dict[str, ChatSession] = {}

    def get(self, chat_id: str) -> ChatSession | None:
        return self._chats.get(chat_id)

    def get_or_create(self, chat_id: str) -> ChatSession:
        chat = self._chats.get(chat_id)
        if chat is None:
            chat = ChatSession(chat_id)
            self._chats[chat_id] = chat
        return chat

    def remove(self, chat_id: str) -> ChatSession | None:
        return self._chats.pop(chat_id, None)

    def ids(self) -> list[str]:
        return list(self._chats)

    def __contains__(self, chat_id: object) -> bool:
        return chat_id in self._chats

    def __len__(self) -> int:
        return len(self._chats)


class AgentAdapter(abc.ABC):
    """Capability contract implemented once per agent kind."""

    #: Registry key and availability key, e.g. ``"codex"``.
    kind: str = ""
    #: Name used in user-facing errors, e.g. ``"Codex"``.
    display_name: str = ""

    def __init__(
        self,
        transport: Transport,
        *,
        config: BridgeConfig | None = None,
        availability: AvailabilityRegistry | None = None,
        policy: ApprovalPolicy | None = None,
    ) -> None:
        self._transport = transport
        self._config = config or BridgeConfig()
        self._availability = availability or AvailabilityRegistry()
        self._policy = policy or ApprovalPolicy(
            extra_safe_commands=self._config.safe_commands
        )
        self._chats = ChatRegistry()
        self._request_ids = itertools.count(1)
        self._callback_tokens = itertools.count(1)
        self._tasks: set[asyncio.Task] = set()

    # ── Public contract ──

    async def send_message(
        self,
        chat_id: str,
        prompt: str,
        work_dir: str,
        log_dir: str | None = None,
        model_version: str | None = None,
        permission_mode: str | None = None,
        init_prompt: str | None = None,
    ) -> None:
        """Start a turn, spawning the agent process if the chat has none."""
        chat = self._chats.get_or_create(chat_id)
        chat.work_dir = work_dir
        if init_prompt and chat.is_new_session:
            prompt = f"{init_prompt}\n\n{prompt}"
        options = TurnOptions(work_dir, log_dir, model_version, permission_mode)
        chat.state = ChatState.STARTING
        try:
            await self._start_turn(chat, prompt, options)
        except BaseException:
            if chat.state is ChatState.STARTING:
                chat.state = ChatState.IDLE
            raise
        if chat.state is ChatState.STARTING:
            chat.state = ChatState.RUNNING

    async def send_tool_approval(
        self,
        chat_id: str,
        request_id: str,
        approved: bool,
        scope_or_options: str | None = None,
    ) -> None:
        """Answer one pending tool or plan approval.

        *scope_or_options* is an option id for agents that offer named
        choices, otherwise ``"once"``, ``"tool"`` or ``"prefix"``. A
        request can be answered once; a second call raises
        ApprovalConflictError and sends nothing.
        """
        chat, record = self._take_approval(chat_id, request_id)
        event = record.event
        if isinstance(event, Question):
            chat.approvals[event.id] = record
            raise ApprovalConflictError(request_id, "question requests take answers")
        event.is_processed = True
        if isinstance(event, PlanApproval):
            await self._send_plan_decision(chat, record, approved, scope_or_options)
            return
        if approved and scope_or_options == SCOPE_TOOL:
            chat.approval_context.add_tool(event.name)
        elif approved and scope_or_options == SCOPE_PREFIX and event.command_prefixes:
            chat.approval_context.add_prefixes(event.command_prefixes)
        await self._send_tool_decision(chat, record, approved, scope_or_options)

    async def answer_question(
        self, chat_id: str, request_id: str, answers: dict[str, str]
    ) -> None:
        """Answer a pending question request (question text → answer)."""
        chat, record = self._take_approval(chat_id, request_id)
        if not isinstance(record.event, Question):
            chat.approvals[record.event.id] = record
            raise ApprovalConflictError(request_id, "not a question request")
        await self._send_question_answer(chat, record, answers)

    async def interrupt_turn(self, chat_id: str) -> None:
        """Cancel the current turn without ending the process. Default: no-op."""

    async def stop_chat(self, chat_id: str) -> None:
        """Cancel the turn (best effort, bounded), then always terminate."""
        chat = self._chats.get(chat_id)
        if chat is None:
            return
        if chat.running:
            try:
                await asyncio.wait_for(
                    self.interrupt_turn(chat_id), timeout=self._config.cancel_timeout
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "%s: cancel timed out for chat %s; terminating",
                    self.kind, chat_id,
                )
            except BridgeError as exc:
                logger.warning(
                    "%s: cancel failed for chat %s: %s; terminating",
                    self.kind, chat_id, exc,
                )
        try:
            await self._terminate(chat)
        finally:
            self._fail_pending(chat, "chat stopped")
            chat.active_task_stack.clear()
            was_running = chat.running
            chat.state = ChatState.STOPPED
            chat.process_alive = False
            if was_running:
                self._fire_done(chat)

    def is_running(self, chat_id: str) -> bool:
        chat = self._chats.get(chat_id)
        return chat is not None and chat.running

    def get_session_id(self, chat_id: str) -> str | None:
        chat = self._chats.get(chat_id)
        return chat.session_id if chat is not None else None

    def set_session_id(self, chat_id: str, session_id: str | None) -> None:
        """Restore a persisted session id so the next message resumes it."""
        self._chats.get_or_create(chat_id).session_id = session_id

    async def remove_chat(self, chat_id: str) -> None:
        chat = self._chats.get(chat_id)
        if chat is None:
            return
        if chat.running or chat.process_alive:
            await self.stop_chat(chat_id)
        self._detach_listeners(chat)
        self._chats.remove(chat_id)

    def on_event(self, chat_id: str, callback: EventListener) -> Unsubscribe:
        chat = self._chats.get_or_create(chat_id)
        return self._add_callback(chat.event_callbacks, callback)

    def on_done(self, chat_id: str, callback: DoneListener) -> Unsubscribe:
        chat = self._chats.get_or_create(chat_id)
        return self._add_callback(chat.done_callbacks, callback)

    def chat_ids(self) -> list[str]:
        return self._chats.ids()

    async def shutdown(self) -> None:
        """Stop every chat. Errors are logged per chat."""
        for chat_id in self._chats.ids():
            try:
                await self.stop_chat(chat_id)
            except Exception as exc:
                logger.error("%s: error stopping chat %s: %s", self.kind, chat_id, exc)

    # ── Per-protocol hooks ──

    @abc.abstractmethod
    async def _start_turn(
        self, chat: ChatSession, prompt: str, options: TurnOptions
    ) -> None:
        """Spawn if needed, then deliver *prompt* as a new turn."""

    @abc.abstractmethod
    async def _terminate(self, chat: ChatSession) -> None:
        """End the chat's process unconditionally."""

    async def _send_tool_decision(
        self,
        chat: ChatSession,
        record: ApprovalRecord,
        approved: bool,
        scope_or_options: str | None,
    ) -> None:
        raise ApprovalConflictError(record.event.id, f"{self.display_name} has no approvals")

    async def _send_plan_decision(
        self,
        chat: ChatSession,
        record: ApprovalRecord,
        approved: bool,
        feedback: str | None,
    ) -> None:
        raise ApprovalConflictError(record.event.id, f"{self.display_name} has no plan approvals")

    async def _send_question_answer(
        self, chat: ChatSession, record: ApprovalRecord, answers: dict[str, str]
    ) -> None:
        raise ApprovalConflictError(record.event.id, f"{self.display_name} has no questions")

    # ── Shared machinery ──

    def _next_request_id(self) -> int:
        return next(self._request_ids)

    def _add_callback(self, table: dict[int, Any], callback: Any) -> Unsubscribe:
        token = next(self._callback_tokens)
        table[token] = callback

        def remove() -> None:
            table.pop(token, None)

        return remove

    def _emit(self, chat: ChatSession, event: AgentEvent) -> None:
        if isinstance(event, SessionIdAssigned) and event.value:
            chat.session_id = event.value
        for callback in list(chat.event_callbacks.values()):
            try:
                callback(event)
            except Exception:
                logger.exception("%s: event callback failed (%s)", self.kind, event.kind)

    def _fire_done(self, chat: ChatSession) -> None:
        for callback in list(chat.done_callbacks.values()):
            try:
                callback()
            except Exception:
                logger.exception("%s: done callback failed", self.kind)

    def _complete_turn(self, chat: ChatSession) -> None:
        """Mark the turn finished and notify done listeners once."""
        if not chat.running:
            return
        chat.state = ChatState.IDLE
        self._fire_done(chat)

    def _handle_process_exit(self, chat: ChatSession, payload: Any) -> None:
        code = payload.get("code") if isinstance(payload, dict) else None
        logger.info("%s: process for chat %s exited (code=%s)", self.kind, chat.chat_id, code)
        chat.process_alive = False
        chat.active_task_stack.clear()
        self._fail_pending(chat, f"{self.display_name} process exited")
        if chat.running:
            chat.state = ChatState.IDLE
            self._fire_done(chat)

    def _fail_pending(self, chat: ChatSession, reason: str) -> None:
        pending = list(chat.pending_requests.values())
        chat.pending_requests.clear()
        for future in pending:
            if not future.done():
                future.set_exception(TransportError(reason))
                # Retrieved by whoever awaits it; avoid "never retrieved" noise.
                future.exception()

    async def _attach_listeners(
        self, chat: ChatSession, handlers: list[tuple[str, PayloadHandler]]
    ) -> None:
        """Subscribe the chat's output handlers once.

        A failed attach is rolled back so the next call subscribes every
        handler again.
        """
        if chat.listeners_attached:
            return
        try:
            for pattern, handler in handlers:
                unsubscribe = await self._transport.listen(
                    pattern, self._guarded(chat, handler)
                )
                chat.unsubscribers.append(unsubscribe)
        except BaseException:
            self._detach_listeners(chat)
            raise
        chat.listeners_attached = True

    def _detach_listeners(self, chat: ChatSession) -> None:
        for unsubscribe in chat.unsubscribers:
            unsubscribe()
        chat.unsubscribers.clear()
        chat.listeners_attached = False

    def _guarded(
        self, chat: ChatSession, handler: PayloadHandler
    ) -> Callable[[str, Any], None]:
        def deliver(event_type: str, payload: Any) -> None:
            try:
                handler(chat, payload)
            except ProtocolError as exc:
                logger.warning("%s: dropped frame on %s: %s", self.kind, event_type, exc)
            except Exception:
                logger.exception("%s: handler failed on %s", self.kind, event_type)

        return deliver

    async def _invoke_spawn(self, command: str, args: dict[str, Any]) -> Any:
        """Invoke a host spawn command, rewriting missing-binary failures."""
        try:
            result = await self._transport.invoke(command, args)
        except (InvokeError, SpawnError) as exc:
            message = str(exc)
            if is_not_found_error(message):
                binary = self._config.agent_paths.get(self.kind, self.kind)
                friendly = (
                    f"{self.display_name} CLI not found. Make sure '{binary}' "
                    f"is installed and on PATH ({message})"
                )
                self._availability.record_unavailable(self.kind, friendly)
                raise SpawnError(self.kind, friendly) from exc
            raise
        self._availability.record_available(self.kind)
        return result

    def _take_approval(
        self, chat_id: str, request_id: str
    ) -> tuple[ChatSession, ApprovalRecord]:
        chat = self._chats.get(chat_id)
        if chat is None:
            raise ApprovalConflictError(request_id, f"unknown chat {chat_id}")
        record = chat.approvals.pop(str(request_id), None)
        if record is None:
            raise ApprovalConflictError(request_id, "unknown or already resolved")
        return chat, record

    def _register_approval(
        self, chat: ChatSession, event: ToolApproval | PlanApproval | Question, wire_id: Any
    ) -> None:
        """Record an inbound ask and surface it.

        Tool requests the policy deems safe are answered immediately and
        emitted already processed.
        """
        record = ApprovalRecord(event, wire_id)
        if isinstance(event, ToolApproval) and self._policy.should_auto_approve(
            event.name,
            event.command_prefixes,
            command=event.input.get("command") if isinstance(event.input.get("command"), str) else None,
            context=chat.approval_context,
        ):
            event.auto_approved = True
            event.is_processed = True
            logger.info(
                "%s: auto-approved %s %s", self.kind, event.name, event.command_prefixes or ""
            )
            self._emit(chat, event)
            self._spawn_task(
                self._send_tool_decision(chat, record, True, None),
                f"{self.kind}-auto-approve-{event.id}",
            )
            return
        chat.approvals[event.id] = record
        self._emit(chat, event)

    def _spawn_task(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("%s: background task %s failed: %s", self.kind, task.get_name(), exc)
