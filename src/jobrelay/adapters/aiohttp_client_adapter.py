# jobrelay/adapters/aiohttp_client_adapter.py
import asyncio
import aiohttp
from typing import Any, Dict, List, Optional

from jobrelay.core.interfaces.http_client import HttpClientPort
from jobrelay.core.exceptions import RemoteServiceException
from jobrelay.core.models.files import BlobFile
from jobrelay.core.models.service_error import ServiceErrorResponse
from jobrelay.core.settings import logger


class AioHttpClientAdapter(HttpClientPort):
    def __init__(self, total_timeout: float = 10.0, connect_timeout: float = 5.0):
        self._session: Optional[aiohttp.ClientSession] = None
        # Default client timeout configuration for individual requests.
        # Streaming transports open their own connections without a total
        # timeout; these apply to plain request/response calls only.
        self._default_total: float = total_timeout
        self._default_sock_read: float = total_timeout
        self._default_sock_connect: float = connect_timeout
        self._default_client_timeout = aiohttp.ClientTimeout(
            total=self._default_total,
            sock_read=self._default_sock_read,
            sock_connect=self._default_sock_connect,
        )

    async def __aenter__(self):
        """Async context manager entry"""
        self._session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit"""
        await self.close()
        return False

    @property
    def session(self) -> aiohttp.ClientSession:
        """Underlying aiohttp session, shared with the streaming transport adapters."""
        if self._session is None:
            raise RuntimeError("HTTP client not initialized. Use 'async with' context manager.")
        return self._session

    def _timeout(self, timeout: float | None) -> aiohttp.ClientTimeout:
        if timeout is None:
            return self._default_client_timeout
        # Keep adapter-level sock_read/sock_connect values but apply provided total
        return aiohttp.ClientTimeout(
            total=timeout,
            sock_read=self._default_sock_read,
            sock_connect=self._default_sock_connect,
        )

    async def get(self, url: str, timeout: float | None = None, headers: Dict[str, str] | None = None) -> Dict[str, Any]:
        return await self._fetch_json(
            url,
            timeout=self._timeout(timeout),
            headers=headers,
            raise_for_status=True,
        )

    async def _fetch_json(
        self,
        url: str,
        raise_for_status: bool = False,
        **kwargs
    ) -> Dict[str, Any]:
        """
        Fetch JSON from URL, translating HTTP/network errors into RemoteServiceException.
        """
        session = self.session

        try:
            async with session.get(url, **kwargs) as response:
                if raise_for_status:
                    response.raise_for_status()
                try:
                    return await response.json()
                except aiohttp.ContentTypeError:
                    response_text = await response.text()
                    logger.error(
                        "Invalid JSON response from remote service. URL: %s, Content: %s",
                        url,
                        response_text[:500],
                    )
                    raise RemoteServiceException(
                        ServiceErrorResponse(
                            title="Invalid Response Content",
                            status=502,
                            detail=(
                                "The response from the remote service was not valid JSON"
                                f": '{response_text[:100]}'"
                            ),
                        )
                    )

        except RemoteServiceException:
            raise

        except asyncio.TimeoutError:
            logger.error("Timeout when requesting remote service. URL: %s", url)
            raise RemoteServiceException(
                ServiceErrorResponse(
                    title="Upstream Timeout",
                    status=504,
                    detail="The request to the remote service timed out.",
                )
            )

        except aiohttp.ClientResponseError as client_response_error:
            if client_response_error.status == 401:
                logger.warning(
                    "Authentication failed when requesting remote service. URL: %s, Error: %s",
                    url,
                    str(client_response_error),
                )
                raise RemoteServiceException(
                    ServiceErrorResponse(
                        title="Authentication Failed",
                        status=401,
                        detail="Authentication with the remote service failed.",
                    )
                )

            logger.error(
                "HTTP error when requesting remote service. URL: %s, Status: %s, Error: %s",
                url,
                client_response_error.status,
                str(client_response_error),
            )
            raise RemoteServiceException(
                ServiceErrorResponse(
                    title="Upstream HTTP Error",
                    status=client_response_error.status,
                    detail=f"The remote service returned an HTTP error: {client_response_error.status}",
                )
            )

        except aiohttp.ClientError as client_error:
            logger.error(
                "Connection error when requesting remote service. URL: %s, Error: %s",
                url,
                str(client_error),
            )
            raise RemoteServiceException(
                ServiceErrorResponse(
                    title="Upstream Connection Error",
                    status=502,
                    detail="There was a connection error with the remote service.",
                )
            )

    async def close(self) -> None:
        """Close the session"""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def post(self, url: str, json: Any, timeout: float | None = None, headers: Dict[str, str] | None = None) -> Dict[str, Any]:
        return await self._send(
            url, timeout=self._timeout(timeout), json=json, headers=headers
        )

    async def upload(self, url: str, files: List[BlobFile], headers: Dict[str, str] | None = None) -> Dict[str, Any]:
        form = aiohttp.FormData()
        for blob in files:
            form.add_field(
                "files",
                blob.content,
                filename=blob.name or "blob",
                content_type=blob.mime_type or "application/octet-stream",
            )
        # Uploads can be large; only the connect timeout applies.
        upload_timeout = aiohttp.ClientTimeout(
            total=None, sock_connect=self._default_sock_connect
        )
        return await self._send(url, timeout=upload_timeout, data=form, headers=headers)

    async def _send(self, url: str, **kwargs) -> Dict[str, Any]:
        session = self.session

        try:
            async with session.post(url, **kwargs) as response:
                # Attempt to parse JSON, but return status and headers as well.
                # No raise_for_status: callers branch on the status code.
                try:
                    body = await response.json(content_type=None)
                except ValueError:
                    body = await response.text()

                return {
                    "status": response.status,
                    "headers": dict(response.headers),
                    "body": body,
                }

        except asyncio.TimeoutError:
            logger.error("Timeout when POSTing to remote service. URL: %s", url)
            raise RemoteServiceException(
                ServiceErrorResponse(
                    title="Upstream Timeout",
                    status=504,
                    detail="The request to the remote service timed out.",
                )
            )
        except aiohttp.ClientError as client_err:
            logger.error("Connection error when POSTing to remote service. URL: %s, Error: %s", url, str(client_err))
            raise RemoteServiceException(
                ServiceErrorResponse(
                    title="Upstream Connection Error",
                    status=502,
                    detail="There was a connection error with the remote service.",
                )
            )
