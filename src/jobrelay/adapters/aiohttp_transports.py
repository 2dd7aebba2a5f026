# jobrelay/adapters/aiohttp_transports.py
"""aiohttp implementations of the streaming channel ports.

Both adapters borrow the ``aiohttp.ClientSession`` owned by
`AioHttpClientAdapter`, so connection pooling and cookies are shared with
plain HTTP calls of the same client.
"""

import asyncio
import json
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp

from jobrelay.adapters.aiohttp_client_adapter import AioHttpClientAdapter
from jobrelay.core.exceptions import RemoteServiceException
from jobrelay.core.interfaces.transports import (
    EventStreamPort,
    SocketChannelPort,
    TransportFactoryPort,
)
from jobrelay.core.models.service_error import ServiceErrorResponse
from jobrelay.core.settings import logger

# Close codes that count as a normal close handshake
CLEAN_CLOSE_CODES = {aiohttp.WSCloseCode.OK, aiohttp.WSCloseCode.GOING_AWAY}


def _connection_error(url: str, detail: str, status: int = 502) -> RemoteServiceException:
    return RemoteServiceException(
        ServiceErrorResponse(
            title="Upstream Connection Error",
            status=status,
            detail=detail,
            instance=url,
        )
    )


class AioHttpWebSocketAdapter(SocketChannelPort):
    def __init__(
        self,
        session: aiohttp.ClientSession,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        connect_timeout: float = 5.0,
    ) -> None:
        self._session = session
        self._url = url
        self._headers = headers or {}
        self._connect_timeout = connect_timeout
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._closed_by_client = False
        self._closed_cleanly = False

    async def open(self) -> None:
        try:
            async with asyncio.timeout(self._connect_timeout):
                self._ws = await self._session.ws_connect(self._url, headers=self._headers)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error("WebSocket connect failed. URL: %s, Error: %s", self._url, str(exc))
            raise _connection_error(self._url, f"Could not open socket: {exc}") from exc

    async def send(self, message: Dict[str, Any]) -> None:
        if self._ws is None or self._ws.closed:
            raise _connection_error(self._url, "Socket is not open")
        await self._ws.send_json(message)

    async def messages(self) -> AsyncIterator[Dict[str, Any]]:
        if self._ws is None:
            return
        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                yield json.loads(msg.data)
            elif msg.type == aiohttp.WSMsgType.BINARY:
                yield json.loads(msg.data.decode("utf-8"))
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning("WebSocket error. URL: %s, Error: %s", self._url, str(self._ws.exception()))
                break
        self._closed_cleanly = self._closed_by_client or self._ws.close_code in CLEAN_CLOSE_CODES

    async def close(self) -> None:
        self._closed_by_client = True
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()

    @property
    def closed_cleanly(self) -> bool:
        return self._closed_cleanly


class AioHttpEventStreamAdapter(EventStreamPort):
    """Reads a ``text/event-stream`` response and yields each event's JSON data."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        connect_timeout: float = 5.0,
    ) -> None:
        self._session = session
        self._url = url
        self._headers = headers or {}
        self._connect_timeout = connect_timeout
        self._response: Optional[aiohttp.ClientResponse] = None
        self._closed = False

    async def open(self) -> None:
        headers = {"Accept": "text/event-stream", **self._headers}
        try:
            response = await self._session.get(
                self._url,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=self._connect_timeout),
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error("Event stream connect failed. URL: %s, Error: %s", self._url, str(exc))
            raise _connection_error(self._url, f"Could not open event stream: {exc}") from exc

        if response.status != 200:
            response.release()
            logger.error("Event stream rejected. URL: %s, Status: %s", self._url, response.status)
            raise _connection_error(
                self._url,
                f"Event stream returned HTTP {response.status}",
                status=response.status,
            )
        self._response = response

    async def messages(self) -> AsyncIterator[Dict[str, Any]]:
        if self._response is None:
            return
        data_lines: List[str] = []
        try:
            async for raw_line in self._response.content:
                line = raw_line.decode("utf-8").rstrip("\r\n")
                if not line:
                    # Blank line terminates one event
                    if data_lines:
                        payload = "\n".join(data_lines)
                        data_lines = []
                        yield json.loads(payload)
                    continue
                if line.startswith(":"):
                    continue
                if line.startswith("data:"):
                    data_lines.append(line[len("data:"):].removeprefix(" "))
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            if self._closed:
                return
            logger.warning("Event stream dropped. URL: %s, Error: %s", self._url, str(exc))
            raise _connection_error(self._url, f"Event stream dropped: {exc}") from exc

        if data_lines:
            yield json.loads("\n".join(data_lines))

    async def close(self) -> None:
        self._closed = True
        if self._response is not None:
            self._response.close()


class AioHttpTransportFactory(TransportFactoryPort):
    def __init__(self, http_client: AioHttpClientAdapter, connect_timeout: float = 5.0) -> None:
        self._http = http_client
        self._connect_timeout = connect_timeout

    def socket(self, url: str, headers: Dict[str, str] | None = None) -> SocketChannelPort:
        return AioHttpWebSocketAdapter(
            self._http.session, url, headers, connect_timeout=self._connect_timeout
        )

    def event_stream(self, url: str, headers: Dict[str, str] | None = None) -> EventStreamPort:
        return AioHttpEventStreamAdapter(
            self._http.session, url, headers, connect_timeout=self._connect_timeout
        )
