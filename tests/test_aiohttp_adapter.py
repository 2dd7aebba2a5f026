import asyncio

import aiohttp
import pytest
from aioresponses import aioresponses

from jobrelay.adapters.aiohttp_client_adapter import AioHttpClientAdapter
from jobrelay.adapters.aiohttp_transports import AioHttpTransportFactory
from jobrelay.core.exceptions import RemoteServiceException
from jobrelay.core.models.files import BlobFile

"""
Tests for the aiohttp adapters.

Expected outcomes:
- GET: valid JSON is returned as a dict; non-JSON bodies map to a
    RemoteServiceException with status 502; HTTP errors keep their status;
    timeouts map to 504.
- POST/upload: never raise on non-2xx; the status and parsed body are
    returned so callers can branch (e.g. 503 "queue full").
- Event stream: each ``data:`` event is decoded as JSON, comments and other
    fields are skipped.
"""


@pytest.mark.asyncio
async def test_get_json_response():
    url = "http://svc.test/config"
    with aioresponses() as m:
        m.get(url, payload={"protocol": "sse_v2"}, status=200)

        async with AioHttpClientAdapter() as client:
            data = await client.get(url)
            assert data == {"protocol": "sse_v2"}


@pytest.mark.asyncio
async def test_get_non_json_response_raises_remote_exception():
    url = "http://svc.test/bad"
    with aioresponses() as m:
        m.get(url, body="<html>error</html>", status=200, headers={"Content-Type": "text/html"})

        async with AioHttpClientAdapter() as client:
            with pytest.raises(RemoteServiceException) as excinfo:
                await client.get(url)
            assert excinfo.value.response.status == 502


@pytest.mark.asyncio
async def test_get_http_error_keeps_status():
    url = "http://svc.test/config"
    with aioresponses() as m:
        m.get(url, status=404, body="Not Found")

        async with AioHttpClientAdapter() as client:
            with pytest.raises(RemoteServiceException) as excinfo:
                await client.get(url)
            assert excinfo.value.response.status == 404


@pytest.mark.asyncio
async def test_get_timeout_maps_to_504():
    url = "http://svc.test/slow"
    with aioresponses() as m:
        m.get(url, exception=asyncio.TimeoutError())

        async with AioHttpClientAdapter() as client:
            with pytest.raises(RemoteServiceException) as excinfo:
                await client.get(url)
            assert excinfo.value.response.status == 504


@pytest.mark.asyncio
async def test_post_returns_status_without_raising():
    url = "http://svc.test/queue/join"
    with aioresponses() as m:
        m.post(url, status=503, payload={"detail": "queue full"})

        async with AioHttpClientAdapter() as client:
            resp = await client.post(url, json={"fn_index": 0})
            assert resp["status"] == 503
            assert resp["body"] == {"detail": "queue full"}


@pytest.mark.asyncio
async def test_post_text_body_is_returned_raw():
    url = "http://svc.test/run/predict"
    with aioresponses() as m:
        m.post(url, status=500, body="Internal Server Error")

        async with AioHttpClientAdapter() as client:
            resp = await client.post(url, json={})
            assert resp["status"] == 500
            assert resp["body"] == "Internal Server Error"


@pytest.mark.asyncio
async def test_post_connection_error_raises_502():
    url = "http://svc.test/queue/join"
    with aioresponses() as m:
        m.post(url, exception=aiohttp.ClientConnectionError("refused"))

        async with AioHttpClientAdapter() as client:
            with pytest.raises(RemoteServiceException) as excinfo:
                await client.post(url, json={})
            assert excinfo.value.response.status == 502


@pytest.mark.asyncio
async def test_upload_returns_handles():
    url = "http://svc.test/upload"
    with aioresponses() as m:
        m.post(url, status=200, payload=["/tmp/a.txt"])

        async with AioHttpClientAdapter() as client:
            resp = await client.upload(url, [BlobFile(content=b"hello", name="a.txt")])
            assert resp["status"] == 200
            assert resp["body"] == ["/tmp/a.txt"]


@pytest.mark.asyncio
async def test_session_requires_context_manager():
    client = AioHttpClientAdapter()
    with pytest.raises(RuntimeError):
        await client.get("http://svc.test/config")


@pytest.mark.asyncio
async def test_event_stream_yields_data_events():
    url = "http://svc.test/queue/data?session_hash=abc"
    body = (
        ": keep-alive comment\n"
        "\n"
        'data: {"msg": "estimation", "event_id": "E1", "rank": 0}\n'
        "\n"
        "event: message\n"
        'data: {"msg": "process_completed", "event_id": "E1", "success": true}\n'
        "\n"
    )
    with aioresponses() as m:
        m.get(url, status=200, body=body, headers={"Content-Type": "text/event-stream"})

        async with AioHttpClientAdapter() as client:
            stream = AioHttpTransportFactory(client).event_stream(url)
            await stream.open()
            messages = [message async for message in stream.messages()]
            await stream.close()

    assert messages == [
        {"msg": "estimation", "event_id": "E1", "rank": 0},
        {"msg": "process_completed", "event_id": "E1", "success": True},
    ]


@pytest.mark.asyncio
async def test_event_stream_rejected_status_raises():
    url = "http://svc.test/queue/data?session_hash=abc"
    with aioresponses() as m:
        m.get(url, status=404, body="Not Found")

        async with AioHttpClientAdapter() as client:
            stream = AioHttpTransportFactory(client).event_stream(url)
            with pytest.raises(RemoteServiceException) as excinfo:
                await stream.open()
            assert excinfo.value.response.status == 404
