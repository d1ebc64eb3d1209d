from __future__ import annotations

import abc
import asyncio

import aiohttp

from .errors import TransportError
from .logging import get_logger


LOG = get_logger(__name__)


class Transport(abc.ABC):
    """Message-oriented channel to the daemon carrying opaque text frames."""

    @abc.abstractmethod
    async def open(self) -> None:
        ...

    @abc.abstractmethod
    async def send(self, frame: str) -> None:
        ...

    @abc.abstractmethod
    async def receive(self) -> str:
        """Next frame; raises TransportError once the channel is gone."""

    @abc.abstractmethod
    async def close(self) -> None:
        ...


class WebSocketTransport(Transport):
    def __init__(self, url: str, *, connect_timeout: float = 10.0, heartbeat: float | None = 30.0):
        self.url = url
        self.connect_timeout = connect_timeout
        self.heartbeat = heartbeat
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None

    async def open(self) -> None:
        if self._ws is not None and not self._ws.closed:
            return
        self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None, connect=self.connect_timeout))
        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(self.url, heartbeat=self.heartbeat),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError as exc:
            await self.close()
            raise TransportError(f"Timeout while connecting to {self.url} ({self.connect_timeout:.0f}s)") from exc
        except (aiohttp.ClientError, OSError, ValueError) as exc:
            await self.close()
            raise TransportError(f"Cannot connect to {self.url}: {exc}") from exc
        LOG.info("WebSocket connected to %s", self.url)

    async def send(self, frame: str) -> None:
        if self._ws is None or self._ws.closed:
            raise TransportError("channel is closed")
        try:
            await self._ws.send_str(frame)
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
            raise TransportError(f"send failed: {exc}") from exc

    async def receive(self) -> str:
        if self._ws is None:
            raise TransportError("channel is closed")
        try:
            msg = await self._ws.receive()
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
            raise TransportError(f"receive failed: {exc}") from exc

        if msg.type == aiohttp.WSMsgType.TEXT:
            return msg.data
        if msg.type == aiohttp.WSMsgType.BINARY:
            return msg.data.decode("utf-8", errors="replace")
        if msg.type == aiohttp.WSMsgType.ERROR:
            raise TransportError(f"channel error: {self._ws.exception()}")
        reason = msg.extra or "connection closed"
        raise TransportError(f"server closed the channel: {reason}")

    async def close(self) -> None:
        ws, session = self._ws, self._session
        self._ws = None
        self._session = None
        if ws is not None and not ws.closed:
            await ws.close()
        if session is not None and not session.closed:
            await session.close()
