"""Shared fakes for engine tests.

The fakes implement the core ports in memory so job sessions and the stream
multiplexer can be driven message by message without a network.
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from jobrelay.core.interfaces.http_client import HttpClientPort
from jobrelay.core.interfaces.transports import (
    EventStreamPort,
    SocketChannelPort,
    TransportFactoryPort,
)
from jobrelay.core.models.service_config import ServiceConfig
from jobrelay.core.models.status import STAGE_ORDER, TERMINAL_STAGES, Stage

_END = object()


class FakeHttp(HttpClientPort):
    """Records requests; answers POSTs by URL path suffix."""

    def __init__(self, config_body: Any = None):
        self.config_body = config_body
        self.get_calls: List[str] = []
        self.posts: List[tuple] = []
        self.uploads: List[tuple] = []
        self.post_responses: Dict[str, Any] = {}
        self.post_gates: Dict[str, asyncio.Event] = {}
        self.post_headers: List[Optional[Dict[str, str]]] = []
        self.upload_responses: List[Any] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False

    async def close(self) -> None:
        pass

    async def get(self, url, timeout=None, headers=None):
        self.get_calls.append(url)
        if isinstance(self.config_body, Exception):
            raise self.config_body
        return self.config_body

    async def post(self, url, json, timeout=None, headers=None):
        self.posts.append((url, json))
        self.post_headers.append(headers)
        path = url.split("?")[0]
        for suffix, gate in self.post_gates.items():
            if path.endswith(suffix):
                await gate.wait()
        for suffix, resp in self.post_responses.items():
            if path.endswith(suffix):
                if isinstance(resp, Exception):
                    raise resp
                return resp
        return {"status": 200, "headers": {}, "body": {}}

    async def upload(self, url, files, headers=None):
        self.uploads.append((url, list(files)))
        resp = self.upload_responses.pop(0) if self.upload_responses else None
        if isinstance(resp, Exception):
            raise resp
        if resp is None:
            resp = {"status": 200, "headers": {}, "body": [f"/tmp/file{i}" for i in range(len(files))]}
        return resp

    def posts_to(self, suffix: str) -> List[Any]:
        return [body for url, body in self.posts if url.split("?")[0].endswith(suffix)]


class FakeEventStream(EventStreamPort):
    def __init__(self, url: str, headers=None):
        self.url = url
        self.headers = headers
        self.open_gate: Optional[asyncio.Event] = None
        self.open_error: Optional[Exception] = None
        self.opened = False
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()

    async def open(self) -> None:
        if self.open_gate is not None:
            await self.open_gate.wait()
        if self.open_error is not None:
            raise self.open_error
        self.opened = True

    async def messages(self):
        while True:
            item = await self._queue.get()
            if item is _END:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def close(self) -> None:
        self.closed = True
        self._queue.put_nowait(_END)

    def push(self, *messages: Dict[str, Any]) -> None:
        for message in messages:
            self._queue.put_nowait(message)

    def fail(self, exc: Exception) -> None:
        self._queue.put_nowait(exc)

    def end(self) -> None:
        self._queue.put_nowait(_END)


class FakeSocket(SocketChannelPort):
    def __init__(self, url: str, headers=None):
        self.url = url
        self.headers = headers
        self.open_gate: Optional[asyncio.Event] = None
        self.open_error: Optional[Exception] = None
        self.opened = False
        self.closed = False
        self.clean = True
        self.sent: List[Dict[str, Any]] = []
        self._queue: asyncio.Queue = asyncio.Queue()

    async def open(self) -> None:
        if self.open_gate is not None:
            await self.open_gate.wait()
        if self.open_error is not None:
            raise self.open_error
        self.opened = True

    async def send(self, message):
        self.sent.append(message)

    async def messages(self):
        while True:
            item = await self._queue.get()
            if item is _END:
                return
            yield item

    async def close(self) -> None:
        self.closed = True
        self._queue.put_nowait(_END)

    @property
    def closed_cleanly(self) -> bool:
        return self.closed or self.clean

    def push(self, *messages: Dict[str, Any]) -> None:
        for message in messages:
            self._queue.put_nowait(message)

    def drop(self) -> None:
        """Simulate the server dropping the connection without a close handshake."""
        self.clean = False
        self._queue.put_nowait(_END)


class FakeTransports(TransportFactoryPort):
    def __init__(self):
        self.streams: List[FakeEventStream] = []
        self.sockets: List[FakeSocket] = []
        self.prepare_stream = None
        self.prepare_socket = None

    def socket(self, url, headers=None):
        sock = FakeSocket(url, headers)
        if self.prepare_socket is not None:
            self.prepare_socket(sock)
        self.sockets.append(sock)
        return sock

    def event_stream(self, url, headers=None):
        stream = FakeEventStream(url, headers)
        if self.prepare_stream is not None:
            self.prepare_stream(stream)
        self.streams.append(stream)
        return stream


async def settle(turns: int = 20) -> None:
    """Let background tasks and ``call_soon`` callbacks run."""
    for _ in range(turns):
        await asyncio.sleep(0)


def make_config(protocol: Optional[str] = "sse_v2", **overrides) -> ServiceConfig:
    body = {
        "root": "http://svc.test",
        "protocol": protocol,
        "version": "4.20.0",
        "enable_queue": True,
        "dependencies": [
            {"api_name": "echo", "queue": True, "types": {"continuous": False, "generator": False}},
            {"api_name": "stream_text", "queue": True, "types": {"continuous": False, "generator": True}},
            {"api_name": "ticker", "queue": True, "types": {"continuous": True, "generator": True}},
            {"api_name": "quick", "queue": False},
        ],
    }
    body.update(overrides)
    return ServiceConfig.model_validate(body)


def is_monotonic(stages: List[Stage]) -> bool:
    """True if ``stages`` never step backwards and end at most once terminally."""
    terminal_seen = False
    previous = -1
    for stage in stages:
        if terminal_seen:
            return False
        rank = STAGE_ORDER[stage]
        if rank < previous:
            return False
        previous = rank
        terminal_seen = stage in TERMINAL_STAGES
    return True


class Recorder:
    """Collects events fired on a job session."""

    def __init__(self, job):
        self.statuses = []
        self.data = []
        self.logs = []
        job.on("status", self.statuses.append)
        job.on("data", self.data.append)
        job.on("log", self.logs.append)

    @property
    def stages(self):
        return [s.stage for s in self.statuses]


@pytest.fixture
def fake_http():
    return FakeHttp()


@pytest.fixture
def fake_transports():
    return FakeTransports()
