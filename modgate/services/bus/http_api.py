"""
Control-Plane HTTP Surface

Exposes the object bus over aiohttp:

    GET  /health               service status and statistics
    GET  /objects              registered paths and their interfaces
    GET  /properties/<path>    all properties of an object
    PUT  /properties/<path>    {"interface", "name", "value"}
    POST /methods/<path>       {"interface", "method", "args": [...]}
    GET  /events               WebSocket stream of property changes

Object paths are given without their leading slash ("/properties/" is the
manager object at "/").
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Callable

from aiohttp import WSMsgType, web

from ...common.exceptions import BusError, GatewayError, InvalidArgumentsError
from ...common.logging_setup import get_service_logger
from .object_bus import ObjectBus, PropertyChange

logger = get_service_logger("bus.http")

# Per-client backlog of undelivered events
EVENT_QUEUE_SIZE = 1000


class ControlApi:
    """
    HTTP/WebSocket front end of the object bus.

    Validation errors map to 400, unknown objects or members to 404.
    """

    def __init__(
        self,
        bus: ObjectBus,
        stats_provider: Callable[[], dict] | None = None,
    ):
        self._bus = bus
        self._stats_provider = stats_provider
        self._start_time = datetime.now(timezone.utc)

        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._clients: set[web.WebSocketResponse] = set()

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/objects", self._objects_handler)
        app.router.add_get("/events", self._events_handler)
        app.router.add_get("/properties/{path:.*}", self._get_properties_handler)
        app.router.add_put("/properties/{path:.*}", self._set_property_handler)
        app.router.add_post("/methods/{path:.*}", self._call_method_handler)
        app.on_shutdown.append(self._close_clients)
        self._app = app
        return app

    async def start(self, host: str, port: int) -> None:
        """Start serving on host:port"""
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()

        site = web.TCPSite(self._runner, host, port)
        await site.start()

        logger.info(f"Control API listening on {host}:{port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    # --- handlers ---

    async def _health_handler(self, request: web.Request) -> web.Response:
        uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        body = {
            "status": "healthy",
            "service": "modgate",
            "uptime": int(uptime),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "bus": self._bus.get_stats(),
            "event_clients": len(self._clients),
        }
        if self._stats_provider is not None:
            body["slaves"] = self._stats_provider()
        return web.json_response(body)

    async def _objects_handler(self, request: web.Request) -> web.Response:
        return web.json_response(self._bus.objects())

    async def _get_properties_handler(self, request: web.Request) -> web.Response:
        path = _object_path(request)
        try:
            properties = self._bus.get_properties(path)
        except BusError as e:
            return _error(404, e)
        return web.json_response({"path": path, "properties": properties})

    async def _set_property_handler(self, request: web.Request) -> web.Response:
        path = _object_path(request)
        try:
            body = await _json_body(request)
            interface = _require_str(body, "interface")
            name = _require_str(body, "name")
            if "value" not in body:
                raise InvalidArgumentsError("missing field: value")

            self._bus.set_property(path, interface, name, body["value"])
            value = self._bus.get_property(path, interface, name)
        except InvalidArgumentsError as e:
            return _error(400, e)
        except BusError as e:
            return _error(404, e)

        return web.json_response({"path": path, "name": name, "value": value})

    async def _call_method_handler(self, request: web.Request) -> web.Response:
        path = _object_path(request)
        try:
            body = await _json_body(request)
            interface = _require_str(body, "interface")
            method = _require_str(body, "method")
            args = body.get("args", [])
            if not isinstance(args, list):
                raise InvalidArgumentsError("args must be a list")

            result = await self._bus.call_method(path, interface, method, *args)
        except InvalidArgumentsError as e:
            return _error(400, e)
        except BusError as e:
            return _error(404, e)
        except GatewayError as e:
            logger.error(f"{method} on {path} failed: {e.message}")
            return _error(500, e)

        return web.json_response({"path": path, "result": result})

    async def _events_handler(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)

        queue: asyncio.Queue[dict] = asyncio.Queue(maxsize=EVENT_QUEUE_SIZE)

        def on_change(change: PropertyChange) -> None:
            try:
                queue.put_nowait(change.to_dict())
            except asyncio.QueueFull:
                logger.warning("Event client too slow, dropping property change")

        unsubscribe = self._bus.subscribe(on_change)
        sender = asyncio.create_task(self._forward_events(ws, queue))
        self._clients.add(ws)
        logger.debug(f"Event client connected ({len(self._clients)} total)")

        try:
            async for msg in ws:
                if msg.type == WSMsgType.ERROR:
                    logger.warning(f"Event client error: {ws.exception()}")
        finally:
            unsubscribe()
            sender.cancel()
            self._clients.discard(ws)
            logger.debug(f"Event client disconnected ({len(self._clients)} total)")

        return ws

    async def _forward_events(
        self,
        ws: web.WebSocketResponse,
        queue: asyncio.Queue,
    ) -> None:
        while not ws.closed:
            event = await queue.get()
            try:
                await ws.send_json(event)
            except ConnectionResetError:
                return

    async def _close_clients(self, app: web.Application) -> None:
        for ws in list(self._clients):
            await ws.close(code=1001, message=b"Server shutdown")


def _object_path(request: web.Request) -> str:
    return "/" + request.match_info.get("path", "").strip("/")


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except json.JSONDecodeError as e:
        raise InvalidArgumentsError(f"invalid JSON: {e}")
    if not isinstance(body, dict):
        raise InvalidArgumentsError("request body must be an object")
    return body


def _require_str(body: dict, key: str) -> str:
    value = body.get(key)
    if not isinstance(value, str) or not value:
        raise InvalidArgumentsError(f"missing field: {key}")
    return value


def _error(status: int, error: GatewayError) -> web.Response:
    return web.json_response({"error": error.message}, status=status)
