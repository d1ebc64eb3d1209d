"""Shared test fixtures and dummy classes."""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from typing import Any, Callable

os.environ.setdefault("AXON_LOG_FILE", os.path.join(tempfile.gettempdir(), "axon-tests", "debug.log"))

import pytest  # noqa: E402

from axon import config  # noqa: E402
from axon.client import SessionContext, Synchronizer  # noqa: E402
from axon.config import AppConfig, ReconnectConfig, RpcConfig  # noqa: E402
from axon.errors import TransportError  # noqa: E402
from axon.mirror import Snapshot, StateMirror  # noqa: E402
from axon.models import MIB  # noqa: E402
from axon.protocol import decode_snapshot  # noqa: E402
from axon.transport import Transport  # noqa: E402


PASSWORD = "hunter2"

RESOURCES: list[dict[str, Any]] = [
    {
        "kind": "server",
        "id": "srv",
        "fields": {"rate_up": 1024, "rate_down": 4096, "throttle_up": -1, "throttle_down": 512000, "free_space": 10 * MIB},
    },
    {"kind": "tracker", "id": "tr1", "fields": {"host": "tracker.example.com", "torrent_ids": ["t1", "t4"]}},
    {"kind": "tracker", "id": "tr2", "fields": {"host": "open.other.org", "torrent_ids": ["t2"], "error": "timed out"}},
    {
        "kind": "torrent",
        "id": "t1",
        "fields": {"name": "Ubuntu 24.04 Desktop", "size": 900 * MIB, "progress": 100, "status": "seeding", "trackers": ["tr1"]},
    },
    {
        "kind": "torrent",
        "id": "t2",
        "fields": {
            "name": "debian-12.iso",
            "size": 500 * MIB,
            "progress": 35.5,
            "status": "leeching",
            "trackers": ["tr2"],
            "throttle_up": 10 * 1024,
        },
    },
    {"kind": "torrent", "id": "t3", "fields": {"name": "Big Buck Bunny", "progress": 0, "status": "magnet"}},
    {
        "kind": "torrent",
        "id": "t4",
        "fields": {"name": "broken pack", "size": 10 * MIB, "progress": 50, "status": "error", "error": "disk full", "trackers": ["tr1"]},
    },
]


def build_snapshot(resources: list[dict[str, Any]] | None = None) -> Snapshot:
    mirror = StateMirror()
    return mirror.replace(decode_snapshot({"resources": RESOURCES if resources is None else resources}))


def fast_config(**rpc: Any) -> AppConfig:
    rpc.setdefault("server", "ws://daemon.test:8412")
    rpc.setdefault("password", PASSWORD)
    rpc.setdefault("timeout", 1.0)
    return AppConfig(rpc=RpcConfig(**rpc), reconnect=ReconnectConfig(initial_delay=0.01, factor=2.0, max_delay=0.04))


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.002)


class FakeTransport(Transport):
    """In-memory channel that answers requests like a daemon would."""

    def __init__(self, daemon: "FakeDaemon", url: str) -> None:
        self.daemon = daemon
        self.url = url
        self.sent: list[dict[str, Any]] = []
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def open(self) -> None:
        if self.daemon.refuse:
            raise TransportError("connection refused")

    async def send(self, frame: str) -> None:
        if self.closed:
            raise TransportError("channel is closed")
        request = json.loads(frame)
        self.sent.append(request)
        method = request["method"]
        if method in self.daemon.hold:
            return
        if method == "authenticate":
            if request["params"].get("password") == self.daemon.password:
                self.reply(request["id"], {})
            else:
                self.reply(request["id"], error={"message": "invalid password"})
        elif method == "snapshot":
            self.reply(request["id"], {"resources": list(self.daemon.resources)})
        else:
            self.reply(request["id"], {})

    async def receive(self) -> str:
        item = await self.inbox.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True

    def reply(self, request_id: int, result: Any = None, error: Any = None) -> None:
        message: dict[str, Any] = {"type": "response", "id": request_id}
        if error is not None:
            message["error"] = error
        else:
            message["result"] = result
        self.inbox.put_nowait(json.dumps(message))

    def push(self, kind: str, resource_id: str, operation: str = "upsert", **fields: Any) -> None:
        self.inbox.put_nowait(
            json.dumps({"type": "update", "kind": kind, "id": resource_id, "operation": operation, "fields": fields})
        )

    def push_raw(self, frame: str) -> None:
        self.inbox.put_nowait(frame)

    def drop(self, reason: str = "connection reset by peer") -> None:
        self.inbox.put_nowait(TransportError(reason))

    def requests(self, method: str) -> list[dict[str, Any]]:
        return [request for request in self.sent if request["method"] == method]


class FakeDaemon:
    """Transport factory handing out a fresh FakeTransport per connection."""

    def __init__(self, resources: list[dict[str, Any]] | None = None, password: str = PASSWORD) -> None:
        self.resources = list(RESOURCES if resources is None else resources)
        self.password = password
        self.refuse = False
        self.hold: set[str] = set()
        self.transports: list[FakeTransport] = []

    def __call__(self, url: str) -> FakeTransport:
        transport = FakeTransport(self, url)
        self.transports.append(transport)
        return transport

    @property
    def current(self) -> FakeTransport:
        return self.transports[-1]


@pytest.fixture
def snapshot() -> Snapshot:
    return build_snapshot()


@pytest.fixture
def daemon() -> FakeDaemon:
    return FakeDaemon()


def make_synchronizer(daemon: FakeDaemon, **rpc: Any) -> Synchronizer:
    config = fast_config(**rpc)
    session = SessionContext(server=config.rpc.server, password=config.rpc.password)
    return Synchronizer(config, session, transport_factory=daemon)


@pytest.fixture
async def sync(daemon):
    synchronizer = make_synchronizer(daemon)
    yield synchronizer
    await synchronizer.close()
    await asyncio.sleep(0)


@pytest.fixture
def config_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "CONFIG_DIR", tmp_path)
    monkeypatch.setattr(config, "CONFIG_FILE", tmp_path / "config.yaml")
    return tmp_path
