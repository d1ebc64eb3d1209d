from __future__ import annotations

import asyncio
import enum
import functools
import itertools
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generator, List, Optional

from .config import AppConfig
from .errors import (
    AuthError,
    NotConnected,
    ProtocolError,
    RequestCancelled,
    RequestFailed,
    RequestTimeout,
    TransportError,
)
from .logging import get_logger
from .mirror import Snapshot, StateMirror
from .models import Update
from .protocol import Request, Response, decode_message, decode_snapshot, encode_request
from .transport import Transport, WebSocketTransport


LOG = get_logger(__name__)


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    AUTHENTICATING = "authenticating"
    SYNCING_SNAPSHOT = "syncing"
    LIVE = "live"
    CLOSED = "closed"


@dataclass
class SessionContext:
    """Connection-wide state shared by the synchronizer and the navigator."""

    server: str
    password: str | None = None
    state: ConnectionState = ConnectionState.DISCONNECTED
    authenticated: bool = False
    # a session reached LIVE with the current credentials
    logged_in: bool = False
    error: Exception | None = None
    reconnect_at: float | None = None
    throttle_up: int | None = None
    throttle_down: int | None = None

    @property
    def resumable(self) -> bool:
        return self.logged_in and not isinstance(self.error, AuthError) and self.state is not ConnectionState.CLOSED


class ControlHandle:
    """Awaitable completion of one control request."""

    def __init__(self, request_id: int, method: str, future: asyncio.Future):
        self.request_id = request_id
        self.method = method
        self._future = future

    def __await__(self) -> Generator[Any, None, Any]:
        return self._future.__await__()

    def done(self) -> bool:
        return self._future.done()

    def cancel(self, reason: str = "request cancelled") -> bool:
        if self._future.done():
            return False
        self._future.set_exception(RequestCancelled(reason))
        return True

    def exception(self) -> BaseException | None:
        if self._future.cancelled():
            return RequestCancelled()
        return self._future.exception()

    def add_done_callback(self, callback: Callable[["ControlHandle"], None]) -> None:
        self._future.add_done_callback(lambda _future: callback(self))


@dataclass
class _Pending:
    method: str
    future: asyncio.Future
    timer: asyncio.TimerHandle


StateListener = Callable[[ConnectionState, Optional[Exception]], None]
SnapshotListener = Callable[[Snapshot], None]


class Synchronizer:
    """Owns the channel to the daemon and is the only writer of the mirror."""

    def __init__(
        self,
        config: AppConfig,
        session: SessionContext,
        *,
        mirror: StateMirror | None = None,
        transport_factory: Callable[[str], Transport] | None = None,
    ):
        self.config = config
        self.session = session
        self.mirror = mirror or StateMirror()
        self._transport_factory = transport_factory or self._websocket
        self._transport: Transport | None = None
        self._reader: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._pending: dict[int, _Pending] = {}
        # updates received while the snapshot request is in flight
        self._backlog: list[Update] | None = None
        self._ids = itertools.count(1)
        self._generation = 0
        self._delay = config.reconnect.initial_delay
        self._tasks: set[asyncio.Task] = set()
        self._state_listeners: List[StateListener] = []
        self._snapshot_listeners: List[SnapshotListener] = []

    def _websocket(self, url: str) -> Transport:
        return WebSocketTransport(url, connect_timeout=self.config.rpc.connect_timeout)

    @property
    def state(self) -> ConnectionState:
        return self.session.state

    @property
    def snapshot(self) -> Snapshot:
        return self.mirror.snapshot

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def add_snapshot_listener(self, listener: SnapshotListener) -> None:
        self._snapshot_listeners.append(listener)

    async def connect(self, server: str | None = None, password: str | None = None) -> bool:
        """Authenticate and sync a full snapshot. True once the session is live."""
        if self.session.state is ConnectionState.CLOSED:
            raise NotConnected("session is closed")
        if (server is not None and server != self.session.server) or (
            password is not None and password != self.session.password
        ):
            self.session.logged_in = False
        if server is not None:
            self.session.server = server
        if password is not None:
            self.session.password = password

        self._cancel_reconnect()
        await self._teardown("reconnecting")
        self._generation += 1
        generation = self._generation
        self.session.error = None
        self.session.authenticated = False
        self._set_state(ConnectionState.AUTHENTICATING)

        transport = self._transport_factory(self.session.server)
        self._transport = transport
        try:
            await transport.open()
        except TransportError as exc:
            await self._connection_lost(exc, transport)
            return False
        if generation != self._generation or self._transport is not transport:
            await transport.close()
            return False
        self._reader = self._spawn(self._receive_loop(transport))

        try:
            await self._request("authenticate", {"password": self.session.password or ""})
        except RequestFailed as exc:
            await self._auth_rejected(exc)
            return False
        except RequestTimeout as exc:
            await self._connection_lost(TransportError(str(exc)), transport)
            return False
        except (RequestCancelled, NotConnected):
            return False

        self.session.authenticated = True
        self._set_state(ConnectionState.SYNCING_SNAPSHOT)
        self._backlog = []
        try:
            result = await self._request("snapshot", {})
            self.mirror.replace(decode_snapshot(result))
            backlog, self._backlog = self._backlog or [], None
            snapshot = self.mirror.apply_updates(backlog)
        except (RequestFailed, RequestTimeout, ProtocolError) as exc:
            await self._connection_lost(TransportError(f"snapshot failed: {exc}"), transport)
            return False
        except (RequestCancelled, NotConnected):
            return False

        self.session.logged_in = True
        self._delay = self.config.reconnect.initial_delay
        self._publish(snapshot)
        self._set_state(ConnectionState.LIVE)
        return True

    def send_control(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> ControlHandle:
        if self.session.state is not ConnectionState.LIVE:
            raise NotConnected()
        handle = self._issue(method, params or {}, timeout)
        LOG.debug("Control request %s #%s", method, handle.request_id)
        return handle

    def apply_update(self, update: Update) -> Snapshot:
        snapshot = self.mirror.apply_update(update)
        self._publish(snapshot)
        return snapshot

    async def disconnect(self) -> None:
        """Log out: drop the channel and the mirror without reconnecting."""
        if self.session.state is ConnectionState.CLOSED:
            return
        self._cancel_reconnect()
        self._generation += 1
        await self._teardown("logged out")
        self.session.logged_in = False
        self.session.authenticated = False
        self.session.error = None
        self._publish(self.mirror.clear())
        self._set_state(ConnectionState.DISCONNECTED)

    async def close(self) -> None:
        if self.session.state is ConnectionState.CLOSED:
            return
        self._cancel_reconnect()
        self._generation += 1
        await self._teardown("session closed")
        self._set_state(ConnectionState.CLOSED)
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()

    async def _request(self, method: str, params: dict[str, Any]) -> Any:
        return await self._issue(method, params, None)

    def _issue(self, method: str, params: dict[str, Any], timeout: float | None) -> ControlHandle:
        transport = self._transport
        if transport is None:
            raise NotConnected()
        loop = asyncio.get_running_loop()
        request_id = next(self._ids)
        future = loop.create_future()
        timeout = self.config.rpc.timeout if timeout is None else timeout
        timer = loop.call_later(timeout, self._expire, request_id, method, timeout)
        self._pending[request_id] = _Pending(method, future, timer)
        future.add_done_callback(functools.partial(self._forget, request_id))
        self._spawn(self._transmit(transport, Request(request_id, method, params)))
        return ControlHandle(request_id, method, future)

    def _forget(self, request_id: int, future: asyncio.Future) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is not None:
            pending.timer.cancel()
        if not future.cancelled():
            # mark the exception as retrieved when nobody awaits the handle
            future.exception()

    def _expire(self, request_id: int, method: str, timeout: float) -> None:
        pending = self._pending.get(request_id)
        if pending is None or pending.future.done():
            return
        LOG.warning("Request %s #%s timed out after %.1fs", method, request_id, timeout)
        pending.future.set_exception(RequestTimeout(method, timeout))

    def _fail_pending(self, reason: str) -> None:
        for pending in list(self._pending.values()):
            pending.timer.cancel()
            if not pending.future.done():
                pending.future.set_exception(RequestCancelled(reason))
        self._pending.clear()

    async def _transmit(self, transport: Transport, request: Request) -> None:
        try:
            await transport.send(encode_request(request))
        except TransportError as exc:
            await self._connection_lost(exc, transport)

    async def _receive_loop(self, transport: Transport) -> None:
        try:
            while True:
                frame = await transport.receive()
                try:
                    message = decode_message(frame)
                except ProtocolError as exc:
                    LOG.warning("Dropping malformed message: %s", exc)
                    continue
                self._dispatch(message)
        except TransportError as exc:
            await self._connection_lost(exc, transport)

    def _dispatch(self, message: Response | Update) -> None:
        if isinstance(message, Response):
            pending = self._pending.get(message.id)
            if pending is None:
                LOG.warning("Dropping response for unknown request #%s", message.id)
                return
            if pending.future.done():
                return
            if message.ok:
                pending.future.set_result(message.result)
            else:
                pending.future.set_exception(RequestFailed(pending.method, message.error or "unknown error"))
            return

        if self._backlog is not None:
            self._backlog.append(message)
            return
        if self.session.state is not ConnectionState.LIVE:
            LOG.debug("Dropping %s update for %s before the snapshot request", message.kind.value, message.id)
            return
        try:
            self.apply_update(message)
        except ProtocolError as exc:
            LOG.warning("Dropping update %s %s: %s", message.kind.value, message.id, exc)

    async def _connection_lost(self, exc: Exception, transport: Transport) -> None:
        if transport is not self._transport:
            return
        LOG.warning("Connection lost: %s", exc)
        await self._teardown("connection lost")
        self.session.error = exc
        self._set_state(ConnectionState.DISCONNECTED, exc)
        self._schedule_reconnect()

    async def _auth_rejected(self, exc: RequestFailed) -> None:
        error = AuthError(exc.reason)
        LOG.warning("Authentication rejected by %s: %s", self.session.server, exc.reason)
        await self._teardown("authentication failed")
        self.session.authenticated = False
        self.session.logged_in = False
        self.session.error = error
        self._set_state(ConnectionState.DISCONNECTED, error)

    async def _teardown(self, reason: str) -> None:
        transport, reader = self._transport, self._reader
        self._transport = None
        self._reader = None
        self._backlog = None
        self._fail_pending(reason)
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
        if transport is not None:
            try:
                await transport.close()
            except (TransportError, OSError) as exc:
                LOG.debug("Closing transport failed: %s", exc)

    def _schedule_reconnect(self) -> None:
        if self.session.state is ConnectionState.CLOSED:
            return
        delay = self._delay
        self._delay = min(delay * self.config.reconnect.factor, self.config.reconnect.max_delay)
        self.session.reconnect_at = asyncio.get_running_loop().time() + delay
        LOG.info("Reconnecting to %s in %.1fs", self.session.server, delay)
        self._reconnect_task = self._spawn(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None
        if self.session.state is ConnectionState.CLOSED:
            return
        await self.connect()

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        self.session.reconnect_at = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _set_state(self, state: ConnectionState, error: Exception | None = None) -> None:
        previous = self.session.state
        self.session.state = state
        if state is not previous:
            LOG.info("Session %s -> %s", previous.value, state.value)
        for listener in list(self._state_listeners):
            try:
                listener(state, error)
            except Exception:  # noqa: BLE001
                LOG.exception("State listener failed")

    def _publish(self, snapshot: Snapshot) -> None:
        self.session.throttle_up = snapshot.server.throttle_up
        self.session.throttle_down = snapshot.server.throttle_down
        for listener in list(self._snapshot_listeners):
            try:
                listener(snapshot)
            except Exception:  # noqa: BLE001
                LOG.exception("Snapshot listener failed")
