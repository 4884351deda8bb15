"""HTTP + WebSocket front end for a HostBridge.

Routes:
    POST /api/invoke/{command}   body ``{"args": {...}}`` →
                                 ``{"success": true, "data": ...}`` or
                                 ``{"success": false, "error": "..."}``
    GET  /ws/events              subscribe/unsubscribe frames in,
                                 ``{"event_type", "payload"}`` frames out
    GET  /health                 liveness, never requires a token

When an auth token is configured every other route requires it, either
as ``Authorization: Bearer <token>`` or as a ``?token=`` query parameter.
"""
from __future__ import annotations

import asyncio
import hmac
import json
import logging
import sys
import time
import uuid
import weakref
from typing import Any

from aiohttp import WSMsgType, web

from agent_bridge import __version__
from agent_bridge.errors import BridgeError, UnknownCommandError

from .bridge import HostBridge

logger = logging.getLogger(__name__)

OPEN_PATHS = frozenset({"/health"})


class HostServer:
    """Serves one HostBridge to remote transports."""

    def __init__(
        self,
        bridge: HostBridge,
        *,
        host: str | None = None,
        port: int | None = None,
        auth_token: str | None = None,
    ) -> None:
        self._bridge = bridge
        config = bridge.config
        self._host = host or config.host
        self._port = port if port is not None else config.port
        self._auth_token = auth_token if auth_token is not None else config.auth_token
        self._runner: web.AppRunner | None = None
        self._sockets: weakref.WeakSet[web.WebSocketResponse] = weakref.WeakSet()
        self._started_at = time.time()

        self._app = web.Application(middlewares=[
            self._request_logging_middleware,
            self._auth_middleware,
        ])
        self._app.on_shutdown.append(self._close_sockets)
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def port(self) -> int:
        return self._port

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.debug("HTTP %s %s req=%s from=%s", request.method, request.path, req_id, request.remote)
        try:
            response = await handler(request)
        except web.HTTPException as exc:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path, req_id, exc.status, elapsed_ms,
            )
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception(
                "HTTP %s %s req=%s failed duration_ms=%.1f",
                request.method, request.path, req_id, elapsed_ms,
            )
            raise
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(
            "HTTP %s %s req=%s status=%s duration_ms=%.1f",
            request.method, request.path, req_id,
            getattr(response, "status", "?"), elapsed_ms,
        )
        return response

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        if not self._auth_token or request.path in OPEN_PATHS:
            return await handler(request)
        supplied = request.query.get("token")
        header = request.headers.get("Authorization", "")
        if header.startswith("Bearer "):
            supplied = header[len("Bearer "):].strip()
        if not supplied or not hmac.compare_digest(supplied, self._auth_token):
            logger.warning(
                "Rejected unauthenticated request req=%s path=%s",
                request.get("req_id", "unknown"), request.path,
            )
            return web.json_response(
                {"success": False, "error": "Authentication required"}, status=401
            )
        return await handler(request)

    # ── Routes ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_post("/api/invoke/{command}", self._handle_invoke)
        r.add_get("/ws/events", self._handle_events)

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "version": __version__,
            "uptime": round(time.time() - self._started_at, 1),
            "processes": len(self._bridge.processes.process_ids()),
            "clients": len(self._sockets),
        })

    async def _handle_invoke(self, request: web.Request) -> web.Response:
        command = request.match_info["command"]
        try:
            body = await request.json() if request.can_read_body else {}
        except ValueError:
            return web.json_response(
                {"success": False, "error": "Request body is not valid JSON"}, status=400
            )
        args = body.get("args") if isinstance(body, dict) else None
        if args is not None and not isinstance(args, dict):
            return web.json_response(
                {"success": False, "error": "'args' must be an object"}, status=400
            )
        try:
            data = await self._bridge.invoke(command, args or {})
        except UnknownCommandError as exc:
            return web.json_response({"success": False, "error": str(exc)}, status=404)
        except (BridgeError, ValueError, OSError) as exc:
            logger.warning("Command %s failed req=%s: %s", command, request.get("req_id"), exc)
            return web.json_response({"success": False, "error": str(exc)})
        return web.json_response({"success": True, "data": data})

    async def _handle_events(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)
        self._sockets.add(ws)
        req_id = request.get("req_id", "unknown")
        logger.info("Event client connected req=%s active_clients=%d", req_id, len(self._sockets))

        # One ordered outbound queue per connection; None stops the sender.
        queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        subscriptions: dict[str, Any] = {}

        def forward(event_type: str, payload: Any) -> None:
            queue.put_nowait({"event_type": event_type, "payload": payload})

        async def send_loop() -> None:
            while True:
                frame = await queue.get()
                if frame is None or ws.closed:
                    return
                try:
                    await ws.send_str(json.dumps(frame))
                except (ConnectionResetError, TypeError) as exc:
                    logger.warning("Dropping event %s req=%s: %s", frame.get("event_type"), req_id, exc)
                    if isinstance(exc, ConnectionResetError):
                        return

        sender = asyncio.create_task(send_loop(), name=f"ws-send-{req_id}")
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    self._handle_control_frame(msg.data, subscriptions, forward, req_id)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("Event socket error req=%s: %s", req_id, ws.exception())
        finally:
            for unsubscribe in subscriptions.values():
                unsubscribe()
            subscriptions.clear()
            queue.put_nowait(None)
            await sender
            logger.info("Event client disconnected req=%s", req_id)
        return ws

    def _handle_control_frame(
        self,
        raw: str,
        subscriptions: dict[str, Any],
        forward,
        req_id: str,
    ) -> None:
        try:
            frame = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring non-JSON control frame req=%s", req_id)
            return
        if not isinstance(frame, dict) or not isinstance(frame.get("pattern"), str):
            logger.warning("Ignoring malformed control frame req=%s: %r", req_id, frame)
            return
        pattern = frame["pattern"]
        frame_type = frame.get("type")
        if frame_type == "subscribe":
            if pattern not in subscriptions:
                subscriptions[pattern] = self._bridge.events.listen(pattern, forward)
                logger.debug("req=%s subscribed %s", req_id, pattern)
        elif frame_type == "unsubscribe":
            unsubscribe = subscriptions.pop(pattern, None)
            if unsubscribe is not None:
                unsubscribe()
                logger.debug("req=%s unsubscribed %s", req_id, pattern)
        else:
            logger.warning("Ignoring control frame of type %r req=%s", frame_type, req_id)

    async def _close_sockets(self, app: web.Application) -> None:
        for ws in list(self._sockets):
            await ws.close(message=b"server shutdown")

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start listening and print ``{"port": N}`` to stdout."""
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, self._runner)
        if actual_port is None:
            raise RuntimeError("Host server started but no listening socket was reported.")
        self._port = actual_port

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info(
            "Host server listening on %s:%d (auth=%s)",
            self._host, actual_port, "on" if self._auth_token else "off",
        )

    async def stop(self) -> None:
        """Stop serving and terminate every managed process."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        await self._bridge.shutdown()
        logger.info("Host server stopped")

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None
