"""Push-channel subscriber for the dashboard.

``NotifierClient`` keeps one WebSocket open to the server's ``/ws`` route
and dispatches ``{type, data}`` messages to handlers registered with
``on``. Handlers for a given type run in the order messages arrive.
"""
import asyncio
import inspect
import json
import logging
import uuid
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp

logger = logging.getLogger(__name__)

WS_RECONNECT_DELAY = 3.0
WILDCARD = "*"

Handler = Callable[[Any], Any]


class NotifierClient:
    def __init__(
        self,
        url: str,
        session: Optional[aiohttp.ClientSession] = None,
        reconnect_delay: float = WS_RECONNECT_DELAY,
    ):
        self.url = url
        self.reconnect_delay = reconnect_delay
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._connect_lock = asyncio.Lock()
        self._closing = False
        self._listeners: Dict[str, List[Tuple[str, Handler]]] = defaultdict(list)

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> bool:
        """Open the socket, or reuse the open one. Returns whether it is connected."""
        async with self._connect_lock:
            if self.connected:
                return True
            self._closing = False
            if self._session is None:
                self._session = aiohttp.ClientSession()
            try:
                ws = await self._session.ws_connect(self.url, heartbeat=30)
            except (aiohttp.ClientError, OSError) as e:
                logger.warning(f"WebSocket connect to {self.url} failed: {e}")
                self._schedule_reconnect()
                return False
            self._ws = ws
            self._reader = asyncio.create_task(self._read_loop(ws))

        logger.info("WebSocket connected")
        await self._emit({"type": "connected", "data": None})
        return True

    def on(self, event_type: str, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for ``event_type``; returns an unsubscribe callable.

        Typed handlers receive the message's ``data``; ``"*"`` handlers
        receive the whole message.
        """
        token = uuid.uuid4().hex
        self._listeners[event_type].append((token, handler))

        def unsubscribe():
            registrations = self._listeners.get(event_type, [])
            self._listeners[event_type] = [r for r in registrations if r[0] != token]

        return unsubscribe

    async def send(self, event_type: str, payload: Any = None) -> bool:
        if not self.connected:
            logger.debug(f"Dropping {event_type}: not connected")
            return False
        await self._ws.send_json({"type": event_type, "data": payload})
        return True

    async def disconnect(self):
        self._closing = True
        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._reconnect_task = None

        if self._ws is not None:
            await self._ws.close()
        if self._reader is not None:
            await self._reader
            self._reader = None

        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse):
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        message = json.loads(msg.data)
                    except json.JSONDecodeError:
                        logger.warning(f"Invalid WS message: {msg.data[:200]}")
                        continue
                    if not isinstance(message, dict) or "type" not in message:
                        logger.warning(f"WS message without type: {msg.data[:200]}")
                        continue
                    await self._emit(message)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning(f"WebSocket error: {ws.exception()}")
                    break
        finally:
            if self._ws is ws:
                self._ws = None
            logger.info("WebSocket disconnected")
            await self._emit({"type": "disconnected", "data": None})
            if not self._closing:
                self._schedule_reconnect()

    def _schedule_reconnect(self):
        if self._closing:
            return
        if self._reconnect_task and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_later())

    async def _reconnect_later(self):
        await asyncio.sleep(self.reconnect_delay)
        self._reconnect_task = None
        if not self._closing:
            await self.connect()

    async def _emit(self, message: Dict[str, Any]):
        event_type = message.get("type")
        targets = [(h, message.get("data")) for _, h in list(self._listeners.get(event_type, []))]
        targets += [(h, message) for _, h in list(self._listeners.get(WILDCARD, []))]

        for handler, arg in targets:
            try:
                if inspect.iscoroutinefunction(handler):
                    await handler(arg)
                else:
                    handler(arg)
            except Exception as e:
                logger.error(f"Handler for {event_type} failed: {e}")
