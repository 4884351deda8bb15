"""Network transport: HTTP command invocation plus a WebSocket event channel.

Wire format:
    POST {base}/api/invoke/<command>   body {"args": {...}}
        -> {"success": true, "data": ...} | {"success": false, "error": "..."}
    GET  {ws_base}/ws/events[?token=...]
        client -> {"type": "subscribe" | "unsubscribe", "pattern": "..."}
        server -> {"event_type": "...", "payload": ...}

The event channel opens lazily on the first ``listen``. After it drops,
a reconnect is attempted every ``reconnect_delay`` seconds while any
subscription is live; each reconnect replays one subscribe frame per
live pattern and then fires the reconnect callbacks.
"""
from __future__ import annotations

import asyncio
import itertools
import json
import logging
from collections import deque
from collections.abc import Callable
from typing import Any
from urllib.parse import quote

import aiohttp

from agent_bridge.errors import AuthRequiredError, HttpError, InvokeError, TransportError

from .base import ConnectionState, EventCallback, SubscriptionTable, Transport, Unsubscribe

logger = logging.getLogger(__name__)

StateCallback = Callable[[ConnectionState], None]


class HttpTransport(Transport):
    """Transport to a remote ``HostServer``."""

    def __init__(
        self,
        base_url: str,
        *,
        auth_token: str | None = None,
        reconnect_delay: float = 2.0,
        request_timeout: float = 60.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._auth_token = auth_token
        self._reconnect_delay = reconnect_delay
        self._timeout = aiohttp.ClientTimeout(total=request_timeout)
        self._session = session
        self._owns_session = session is None

        self._state = ConnectionState.DISCONNECTED
        self._has_connected_before = False
        self._auth_required = False

        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._connect_task: asyncio.Task | None = None
        self._reader_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._flush_task: asyncio.Task | None = None
        self._outbox: deque[str] = deque()

        self._subscriptions = SubscriptionTable()
        self._callback_tokens = itertools.count(1)
        self._reconnect_callbacks: dict[int, Callable[[], None]] = {}
        self._auth_callbacks: dict[int, Callable[[], None]] = {}
        self._state_callbacks: dict[int, StateCallback] = {}

    # ── State ──

    @property
    def connection_state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return (
            self._state is ConnectionState.CONNECTED
            and self._ws is not None
            and not self._ws.closed
        )

    @property
    def auth_required(self) -> bool:
        return self._auth_required

    @property
    def auth_token(self) -> str | None:
        return self._auth_token

    def set_auth_token(self, token: str | None) -> None:
        """Use *token* for later requests and a restarted event channel."""
        changed = token != self._auth_token
        self._auth_token = token
        if token:
            self._auth_required = False
        if changed and self._ws is not None and not self._ws.closed:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                return
            loop.create_task(self._restart_channel())

    def on_reconnect(self, callback: Callable[[], None]) -> Unsubscribe:
        return self._add_callback(self._reconnect_callbacks, callback)

    def on_auth_required(self, callback: Callable[[], None]) -> Unsubscribe:
        return self._add_callback(self._auth_callbacks, callback)

    def on_connection_state_change(self, callback: StateCallback) -> Unsubscribe:
        return self._add_callback(self._state_callbacks, callback)

    def _add_callback(self, table: dict[int, Any], callback: Any) -> Unsubscribe:
        token = next(self._callback_tokens)
        table[token] = callback

        def remove() -> None:
            table.pop(token, None)

        return remove

    def _fire(self, table: dict[int, Any], *args: Any) -> None:
        for callback in list(table.values()):
            try:
                callback(*args)
            except Exception:
                logger.exception("Transport callback failed")

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.debug("Event channel %s -> %s", self._state.value, state.value)
        self._state = state
        self._fire(self._state_callbacks, state)

    def _mark_auth_required(self) -> None:
        self._auth_required = True
        self._fire(self._auth_callbacks)

    # ── Commands ──

    def _headers(self) -> dict[str, str]:
        if self._auth_token:
            return {"Authorization": f"Bearer {self._auth_token}"}
        return {}

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def invoke(self, command: str, args: dict[str, Any] | None = None) -> Any:
        url = f"{self._base_url}/api/invoke/{command}"
        try:
            async with self._get_session().post(
                url,
                json={"args": args or {}},
                headers=self._headers(),
                timeout=self._timeout,
            ) as resp:
                if resp.status == 401:
                    self._mark_auth_required()
                    raise AuthRequiredError(await resp.text())
                if not 200 <= resp.status < 300:
                    raise HttpError(resp.status, await resp.text())
                try:
                    body = await resp.json(content_type=None)
                except ValueError as exc:
                    raise TransportError(
                        f"Malformed response for {command}: {exc}"
                    ) from exc
        except aiohttp.ClientError as exc:
            raise TransportError(f"Failed to invoke {command}: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise TransportError(f"Timed out invoking {command}") from exc

        if not isinstance(body, dict):
            raise TransportError(f"Malformed response for {command}: {body!r}")
        if not body.get("success"):
            raise InvokeError(command, str(body.get("error") or "Unknown error"))
        return body.get("data")

    # ── Events ──

    def _events_url(self) -> str:
        if self._base_url.startswith("https://"):
            url = "wss://" + self._base_url[len("https://"):]
        elif self._base_url.startswith("http://"):
            url = "ws://" + self._base_url[len("http://"):]
        else:
            url = self._base_url
        url += "/ws/events"
        if self._auth_token:
            url += "?token=" + quote(self._auth_token, safe="")
        return url

    async def listen(self, pattern: str, callback: EventCallback) -> Unsubscribe:
        await self._ensure_connected()
        token, first = self._subscriptions.add(pattern, callback)
        if first:
            self._queue_control("subscribe", pattern)
            await self._flush()

        def unsubscribe() -> None:
            removed = self._subscriptions.remove(token)
            if removed is None:
                return
            removed_pattern, last = removed
            if last:
                self._queue_control("unsubscribe", removed_pattern)

        return unsubscribe

    async def _ensure_connected(self) -> None:
        if self.is_connected:
            return
        task = self._connect_task
        if task is None:
            task = asyncio.get_running_loop().create_task(self._connect())
            self._connect_task = task
        await asyncio.shield(task)

    async def _connect(self) -> None:
        try:
            self._set_state(ConnectionState.CONNECTING)
            try:
                ws = await self._get_session().ws_connect(
                    self._events_url(), headers=self._headers(), heartbeat=30.0
                )
            except aiohttp.WSServerHandshakeError as exc:
                self._set_state(ConnectionState.DISCONNECTED)
                if exc.status == 401:
                    self._mark_auth_required()
                    raise AuthRequiredError() from exc
                raise TransportError(
                    f"Event channel handshake failed: HTTP {exc.status}"
                ) from exc
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
                self._set_state(ConnectionState.DISCONNECTED)
                raise TransportError(f"Failed to open event channel: {exc}") from exc

            self._ws = ws
            is_reconnect = self._has_connected_before
            self._has_connected_before = True
            self._set_state(ConnectionState.CONNECTED)
            self._reader_task = asyncio.get_running_loop().create_task(
                self._read_loop(ws)
            )
            self._outbox.clear()
            for pattern in self._subscriptions.patterns():
                self._queue_control("subscribe", pattern)
            await self._flush()
            if is_reconnect:
                logger.info(
                    "Event channel reconnected; resubscribed %d pattern(s)",
                    len(self._subscriptions.patterns()),
                )
                self._fire(self._reconnect_callbacks)
            else:
                logger.info("Event channel connected to %s", self._base_url)
        finally:
            self._connect_task = None

    def _queue_control(self, kind: str, pattern: str) -> None:
        # Frames are dropped while disconnected; reconnect replays live patterns.
        if self._ws is None or self._ws.closed:
            return
        self._outbox.append(json.dumps({"type": kind, "pattern": pattern}))
        if self._flush_task is None or self._flush_task.done():
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.debug("No running loop; %s %s not sent", kind, pattern)
                self._outbox.clear()
                return
            self._flush_task = loop.create_task(self._drain_outbox())

    async def _drain_outbox(self) -> None:
        while self._outbox:
            ws = self._ws
            if ws is None or ws.closed:
                self._outbox.clear()
                return
            frame = self._outbox.popleft()
            try:
                await ws.send_str(frame)
            except (ConnectionError, RuntimeError, aiohttp.ClientError) as exc:
                logger.warning("Failed to send control frame: %s", exc)
                self._outbox.clear()
                return

    async def _flush(self) -> None:
        task = self._flush_task
        if task is not None and not task.done():
            await asyncio.shield(task)

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._handle_frame(msg.data)
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    self._handle_frame(msg.data.decode("utf-8", errors="replace"))
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning("Event channel error: %s", ws.exception())
                    break
        except (aiohttp.ClientError, ConnectionError) as exc:
            logger.warning("Event channel read failed: %s", exc)
        finally:
            self._on_channel_closed(ws)

    def _handle_frame(self, data: str) -> None:
        try:
            frame = json.loads(data)
        except ValueError:
            logger.warning("Dropping malformed event frame: %.200s", data)
            return
        if not isinstance(frame, dict) or not isinstance(frame.get("event_type"), str):
            logger.warning("Dropping event frame without event_type: %.200s", data)
            return
        self._subscriptions.dispatch(frame["event_type"], frame.get("payload"))

    def _on_channel_closed(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        if self._ws is not ws:
            return
        self._ws = None
        self._outbox.clear()
        self._set_state(ConnectionState.DISCONNECTED)
        if not self._subscriptions.is_empty():
            logger.info(
                "Event channel closed; reconnecting in %.1fs", self._reconnect_delay
            )
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect_loop()
        )

    async def _reconnect_loop(self) -> None:
        while True:
            await asyncio.sleep(self._reconnect_delay)
            if self._subscriptions.is_empty():
                return
            if not self.is_connected:
                try:
                    await self._ensure_connected()
                except AuthRequiredError:
                    logger.warning("Reconnect rejected: authentication required")
                    return
                except TransportError as exc:
                    logger.info(
                        "Reconnect failed: %s; retrying in %.1fs",
                        exc, self._reconnect_delay,
                    )
                    continue
            if self.is_connected:
                return

    async def _restart_channel(self) -> None:
        ws = self._ws
        if ws is None:
            return
        self._ws = None
        self._set_state(ConnectionState.DISCONNECTED)
        await ws.close()
        if self._subscriptions.is_empty():
            return
        try:
            await self._ensure_connected()
        except TransportError as exc:
            logger.warning("Event channel restart failed: %s", exc)
            self._schedule_reconnect()

    async def disconnect(self) -> None:
        """Hard reset: close everything and forget all subscriptions and callbacks."""
        self._subscriptions.clear()
        self._outbox.clear()
        pending = [
            t for t in (self._reconnect_task, self._connect_task, self._flush_task)
            if t is not None and not t.done()
        ]
        for task in pending:
            task.cancel()
        self._reconnect_task = None
        self._connect_task = None
        self._flush_task = None

        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            await ws.close()
        reader, self._reader_task = self._reader_task, None
        if reader is not None and not reader.done():
            reader.cancel()
            pending.append(reader)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        self._set_state(ConnectionState.DISCONNECTED)
        self._reconnect_callbacks.clear()
        self._auth_callbacks.clear()
        self._state_callbacks.clear()

        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
