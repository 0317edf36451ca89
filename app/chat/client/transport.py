"""Client-side event transport for the chat socket."""
import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit, parse_qsl
import logging

import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from app.realtime.protocol import WsInbound, WsOutbound
from pkg.log.logger import get_logger

EventHandler = Callable[[Any], Awaitable[None]]

# Pseudo-events raised by the transport itself
RECONNECTED = "reconnect"
DISCONNECTED = "disconnect"


class ChatTransport(ABC):
    """Emits client events and fans server events out to subscribed handlers."""

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger or get_logger(__name__)
        self._handlers: Dict[str, List[EventHandler]] = {}

    def on(self, event: str, handler: EventHandler) -> Callable[[], None]:
        """Subscribe; returns a callable that removes the subscription."""
        self._handlers.setdefault(event, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    async def _fire(self, event: str, data: Any) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                await handler(data)
            except Exception as e:
                self.logger.error(f"Handler for {event} failed: {e}", exc_info=True)

    @property
    @abstractmethod
    def connected(self) -> bool:
        pass

    @abstractmethod
    async def connect(self) -> None:
        pass

    @abstractmethod
    async def emit(self, event: str, data: Any) -> None:
        """Raises ConnectionError when the socket is not open."""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class WebSocketChatTransport(ChatTransport):
    """``websockets`` client for the gateway's ``/ws`` endpoint with reconnect."""

    def __init__(
        self,
        url: str,
        token: str,
        logger: logging.Logger | None = None,
        reconnect: bool = True,
        max_retries: int = 5,
        initial_delay: float = 1.0,
    ):
        super().__init__(logger)
        self.url = url
        self.token = token
        self.reconnect = reconnect
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self._ws = None
        self._open = False
        self._closing = False
        self._reader: Optional[asyncio.Task] = None

    def _url_with_token(self) -> str:
        parts = urlsplit(self.url)
        query = dict(parse_qsl(parts.query))
        query["token"] = self.token
        return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))

    @property
    def connected(self) -> bool:
        return self._open

    async def connect(self) -> None:
        self._closing = False
        self._ws = await websockets.connect(self._url_with_token())
        self._open = True
        self.logger.info(f"Connected to {self.url}")
        if self._reader is None or self._reader.done():
            self._reader = asyncio.create_task(self._read_loop())

    async def _read_loop(self) -> None:
        while True:
            try:
                async for raw in self._ws:
                    try:
                        frame = WsOutbound.model_validate_json(raw)
                    except ValidationError:
                        self.logger.warning("Dropping malformed frame from server")
                        continue
                    await self._fire(frame.event, frame.data)
            except ConnectionClosed as e:
                self.logger.warning(f"Socket closed: {e}")
            self._open = False

            if self._closing or not self.reconnect:
                return
            if not await self._reconnect():
                await self._fire(DISCONNECTED, {})
                return
            await self._fire(RECONNECTED, {})

    async def _reconnect(self) -> bool:
        for attempt in range(self.max_retries):
            delay = self.initial_delay * (2 ** attempt)
            self.logger.info(f"Reconnecting in {delay:.1f}s (attempt {attempt + 1}/{self.max_retries})...")
            await asyncio.sleep(delay)
            if self._closing:
                return False
            try:
                self._ws = await websockets.connect(self._url_with_token())
                self._open = True
                self.logger.info("Reconnected")
                return True
            except (OSError, InvalidHandshake) as e:
                self.logger.warning(f"Reconnect attempt {attempt + 1} failed: {e}")
        self.logger.error(f"Giving up after {self.max_retries} reconnect attempts")
        return False

    async def emit(self, event: str, data: Any) -> None:
        if not self._open or self._ws is None:
            raise ConnectionError("Chat socket is not connected")
        frame = WsInbound(event=event, data=data).model_dump(mode="json")
        try:
            await self._ws.send(json.dumps(frame))
        except ConnectionClosed as e:
            self._open = False
            raise ConnectionError(f"Chat socket closed: {e}") from e

    async def close(self) -> None:
        self._closing = True
        self._open = False
        if self._ws is not None:
            await self._ws.close()
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
