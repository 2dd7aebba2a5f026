"""Tests for ClientSession: descriptor resolution, submit and predict."""

import asyncio

import pytest

from conftest import FakeHttp, FakeTransports, settle
from jobrelay.adapters.retry_tenacity import TenacityRetryAdapter
from jobrelay.core.config import ClientConfig
from jobrelay.core.exceptions import (
    ComponentServerError,
    ConfigResolutionError,
    ContinuousJobError,
    EndpointNotFoundError,
    JobFailedError,
    RemoteServiceException,
    UnsupportedProtocolError,
)
from jobrelay.core.managers.client_session import ClientSession
from jobrelay.core.managers.transport_selector import Transport
from jobrelay.core.models.service_error import ServiceErrorResponse

BASE = "http://svc.test/"


def config_body(protocol="sse_v2"):
    return {
        "protocol": protocol,
        "version": "4.20.0",
        "enable_queue": True,
        "dependencies": [
            {"api_name": "echo", "queue": True, "types": {"continuous": False, "generator": False}},
            {"api_name": "ticker", "types": {"continuous": True, "generator": True}},
            {"api_name": "quick", "queue": False},
        ],
    }


def _client(http, transports=None, **kwargs):
    return ClientSession(BASE, http_client=http, transports=transports or FakeTransports(), **kwargs)


@pytest.mark.asyncio
async def test_connect_resolves_once_and_maps_names():
    http = FakeHttp(config_body())
    client = _client(http)
    config = await client.connect()
    await client.connect()

    assert http.get_calls == ["http://svc.test/config"]
    assert config.root == "http://svc.test"
    assert client.api_map == {"echo": 0, "ticker": 1, "quick": 2}
    await client.close()


def test_session_hash_is_stable_and_base36():
    client = _client(FakeHttp(config_body()))
    first = client.session_hash
    assert len(first) == 11
    assert all(c in "0123456789abcdefghijklmnopqrstuvwxyz" for c in first)
    assert client.session_hash == first
    assert _client(FakeHttp()).session_hash != first


@pytest.mark.asyncio
async def test_submit_requires_connect():
    client = _client(FakeHttp(config_body()))
    with pytest.raises(RuntimeError):
        client.submit("/echo", ["x"])


@pytest.mark.asyncio
async def test_submit_unknown_endpoint_raises():
    async with _client(FakeHttp(config_body())) as client:
        with pytest.raises(EndpointNotFoundError):
            client.submit("/nope", [])


@pytest.mark.asyncio
async def test_submit_unknown_protocol_raises():
    async with _client(FakeHttp(config_body(protocol="grpc"))) as client:
        with pytest.raises(UnsupportedProtocolError):
            client.submit("/echo", [])


@pytest.mark.asyncio
async def test_submit_picks_transport_per_job():
    http = FakeHttp(config_body())
    http.post_responses["/queue/join"] = {"status": 200, "headers": {}, "body": {"event_id": "E1"}}
    async with _client(http) as client:
        queued = client.submit("echo", ["x"])
        direct = client.submit(2, [])
        assert queued.transport is Transport.shared_v2
        assert direct.transport is Transport.direct
        assert direct.endpoint == "/predict"
        await settle()


@pytest.mark.asyncio
async def test_predict_direct_call():
    http = FakeHttp(config_body())
    http.post_responses["/run/quick"] = {"status": 200, "headers": {}, "body": {"data": ["ok"]}}
    async with _client(http) as client:
        result = await client.predict("/quick", ["x"])
    assert result.data == ["ok"]


@pytest.mark.asyncio
async def test_predict_shared_stream_resolves_on_complete_with_data():
    http, transports = FakeHttp(config_body()), FakeTransports()
    http.post_responses["/queue/join"] = {"status": 200, "headers": {}, "body": {"event_id": "E1"}}
    async with _client(http, transports) as client:
        task = asyncio.create_task(client.predict("/echo", ["hello"]))
        await settle()
        stream = transports.streams[0]
        assert stream.url == f"http://svc.test/queue/data?session_hash={client.session_hash}"
        stream.push(
            {"event_id": "E1", "msg": "process_starts"},
            {"event_id": "E1", "msg": "process_completed", "success": True, "output": {"data": ["hello"]}},
        )
        result = await asyncio.wait_for(task, timeout=1)
    assert result.data == ["hello"]
    assert result.fn_index == 0


@pytest.mark.asyncio
async def test_predict_keeps_last_generated_data():
    http, transports = FakeHttp(config_body(protocol="sse_v1")), FakeTransports()
    http.post_responses["/queue/join"] = {"status": 200, "headers": {}, "body": {"event_id": "E1"}}
    async with _client(http, transports) as client:
        task = asyncio.create_task(client.predict("/echo", ["hello"]))
        await settle()
        transports.streams[0].push(
            {"event_id": "E1", "msg": "process_generating", "success": True, "output": {"data": ["h"]}},
            {"event_id": "E1", "msg": "process_generating", "success": True, "output": {"data": ["he"]}},
            {"event_id": "E1", "msg": "process_completed", "success": True, "output": {"data": ["hello"]}},
        )
        result = await asyncio.wait_for(task, timeout=1)
    assert result.data == ["hello"]


@pytest.mark.asyncio
async def test_predict_raises_on_error_status():
    http = FakeHttp(config_body())
    http.post_responses["/queue/join"] = {"status": 503, "headers": {}, "body": {}}
    async with _client(http) as client:
        with pytest.raises(JobFailedError) as excinfo:
            await client.predict("/echo", ["x"])
    assert excinfo.value.status.stage == "error"
    assert "too busy" in str(excinfo.value)


@pytest.mark.asyncio
async def test_predict_refuses_continuous_jobs():
    async with _client(FakeHttp(config_body())) as client:
        with pytest.raises(ContinuousJobError):
            await client.predict("/ticker", [])


@pytest.mark.asyncio
async def test_config_fetch_failure_retries_then_raises():
    http = FakeHttp(RemoteServiceException(ServiceErrorResponse(title="Upstream HTTP Error", status=502, detail="bad gateway")))
    client = _client(
        http,
        config=ClientConfig(config_fetch_attempts=3, config_fetch_base_wait=0.001, config_fetch_max_wait=0.002),
        retry=TenacityRetryAdapter(),
    )
    with pytest.raises(ConfigResolutionError) as excinfo:
        await client.connect()
    assert str(excinfo.value) == "Could not get config."
    assert excinfo.value.upstream_status == 502
    assert len(http.get_calls) == 3


@pytest.mark.asyncio
async def test_close_releases_running_jobs():
    http, transports = FakeHttp(config_body(protocol="ws")), FakeTransports()
    async with _client(http, transports) as client:
        job = client.submit("/echo", ["x"])
        await settle()
        assert transports.sockets[0].opened
    assert transports.sockets[0].closed
    assert not job.done.is_set()


@pytest.mark.asyncio
async def test_predict_without_output_resolves_empty():
    http, transports = FakeHttp(config_body()), FakeTransports()
    http.post_responses["/queue/join"] = {"status": 200, "headers": {}, "body": {"event_id": "E1"}}
    async with _client(http, transports) as client:
        task = asyncio.create_task(client.predict("/echo", ["x"]))
        await settle()
        transports.streams[0].push({"event_id": "E1", "msg": "process_completed", "success": True})
        result = await asyncio.wait_for(task, timeout=1)
    assert result.data is None
    assert result.fn_index == 0


def component_config():
    body = config_body()
    body["components"] = [
        {"id": 3, "type": "file_explorer", "props": {}},
        {"id": 7, "type": "file_explorer", "props": {"root_url": "http://files.test"}},
        {"id": 9, "type": "markdown", "props": None},
    ]
    return body


@pytest.mark.asyncio
async def test_component_server_posts_to_service_root():
    http = FakeHttp(component_config())
    http.post_responses["/component_server/"] = {"status": 200, "headers": {}, "body": ["a.txt", "b.txt"]}
    async with _client(http, token="tok") as client:
        output = await client.component_server(3, "ls", [["docs"]])

    assert output == ["a.txt", "b.txt"]
    url, body = http.posts[-1]
    assert url == "http://svc.test/component_server/"
    assert body == {"data": [["docs"]], "component_id": 3, "fn_name": "ls", "session_hash": client.session_hash}
    assert http.post_headers[-1] == {"Authorization": "Bearer tok"}


@pytest.mark.asyncio
async def test_component_server_prefers_component_root_url():
    http = FakeHttp(component_config())
    async with _client(http) as client:
        await client.component_server(7, "ls", [])
        await client.component_server(9, "ls", [])
        await client.component_server(42, "ls", [])
    assert [url for url, _ in http.posts] == [
        "http://files.test/component_server/",
        "http://svc.test/component_server/",
        "http://svc.test/component_server/",
    ]


@pytest.mark.asyncio
async def test_component_server_rejection_raises():
    http = FakeHttp(component_config())
    http.post_responses["/component_server/"] = {"status": 404, "headers": {}, "body": "Not Found"}
    async with _client(http) as client:
        with pytest.raises(ComponentServerError) as excinfo:
            await client.component_server(3, "ls", [])
    assert excinfo.value.upstream_status == 404
    assert excinfo.value.component_id == 3


@pytest.mark.asyncio
async def test_component_server_unreachable_raises():
    http = FakeHttp(component_config())
    http.post_responses["/component_server/"] = RemoteServiceException(
        ServiceErrorResponse(title="Upstream Connection Error", status=502, detail="refused")
    )
    async with _client(http) as client:
        with pytest.raises(ComponentServerError) as excinfo:
            await client.component_server(3, "ls", [])
    assert excinfo.value.upstream_status == 502
    assert str(excinfo.value) == "Could not connect to component server: Upstream Connection Error"
