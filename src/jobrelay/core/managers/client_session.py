"""ClientSession: entry point for submitting jobs to one remote service.

Owns everything shared by the jobs of one client instance:
- the session hash sent with every join, call and data post
- the resolved service descriptor and name-to-index map (fetched once)
- the shared-stream multiplexer (created on first ``sse_v1``/``sse_v2`` job)
- the diff snapshots of in-flight ``sse_v2`` jobs
"""

from __future__ import annotations

import asyncio
import secrets
import string
from typing import Any, Dict, List, Optional, Set, Union

from jobrelay.core.config import ClientConfig
from jobrelay.core.exceptions import (
    ComponentServerError,
    ContinuousJobError,
    JobFailedError,
    RemoteServiceException,
)
from jobrelay.core.interfaces.http_client import HttpClientPort
from jobrelay.core.interfaces.retry import RetryPort
from jobrelay.core.interfaces.transports import TransportFactoryPort
from jobrelay.core.managers.diff_reconstructor import DiffReconstructor
from jobrelay.core.managers.job_session import JobSession
from jobrelay.core.managers.stream_multiplexer import StreamMultiplexer
from jobrelay.core.managers.transport_selector import select_transport
from jobrelay.core.models.events import DataEvent, EventKind, StatusEvent
from jobrelay.core.models.service_config import ServiceConfig
from jobrelay.core.models.status import Stage
from jobrelay.core.services.config_service import (
    lookup_job_index,
    map_names_to_ids,
    resolve_config,
)
from jobrelay.core.services.transfer import auth_headers
from jobrelay.core.settings import logger

SESSION_HASH_ALPHABET = string.digits + string.ascii_lowercase
SESSION_HASH_LENGTH = 11


def new_session_hash() -> str:
    return "".join(secrets.choice(SESSION_HASH_ALPHABET) for _ in range(SESSION_HASH_LENGTH))


class ClientSession:
    """Client for one service base URL.

    Usage::

        async with ClientSession(url, http_client=http, transports=factory) as client:
            result = await client.predict("/echo", ["hello"])

    Attributes:
        session_hash: Correlation id of this client; never regenerated
        service_config: Resolved descriptor (None until ``connect``)
        api_map: Job name to function index map built from the descriptor
    """

    def __init__(
        self,
        base_url: str,
        *,
        http_client: HttpClientPort,
        transports: TransportFactoryPort,
        token: Optional[str] = None,
        config: Optional[ClientConfig] = None,
        retry: Optional[RetryPort] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._http = http_client
        self._transports = transports
        self._token = token
        self.config = config or ClientConfig()
        self._retry = retry

        self.session_hash = new_session_hash()
        self.service_config: Optional[ServiceConfig] = None
        self.api_map: Dict[str, int] = {}
        self._multiplexer: Optional[StreamMultiplexer] = None
        self._diffs = DiffReconstructor()
        self._jobs: Set[JobSession] = set()

    async def __aenter__(self) -> "ClientSession":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    async def connect(self) -> ServiceConfig:
        """Resolve the service descriptor once; later calls reuse it."""
        if self.service_config is None:
            self.service_config = await resolve_config(
                self._http,
                self.base_url,
                self._token,
                self._retry,
                attempts=self.config.config_fetch_attempts,
                wait_initial=self.config.config_fetch_base_wait,
                wait_max=self.config.config_fetch_max_wait,
            )
            self.api_map = map_names_to_ids(self.service_config.dependencies)
            logger.info(
                f"[client:connect] base_url={self.base_url} protocol={self.service_config.protocol} "
                f"jobs={len(self.service_config.dependencies)} session_hash={self.session_hash}"
            )
        return self.service_config

    def _require_config(self) -> ServiceConfig:
        if self.service_config is None:
            raise RuntimeError("Client not connected. Await 'connect()' or use 'async with'.")
        return self.service_config

    @property
    def multiplexer(self) -> StreamMultiplexer:
        if self._multiplexer is None:
            config = self._require_config()
            self._multiplexer = StreamMultiplexer(
                self._transports, config.root, self.session_hash, self._token
            )
        return self._multiplexer

    def submit(
        self,
        endpoint: Union[int, str],
        data: Optional[List[Any]] = None,
        event_data: Any = None,
        trigger_id: Optional[int] = None,
    ) -> JobSession:
        """Start a job and return its session; events arrive on the running loop.

        Raises:
            EndpointNotFoundError: for an unknown job name or negative index
            UnsupportedProtocolError: if the service advertises an unknown protocol
        """
        config = self._require_config()
        fn_index = lookup_job_index(endpoint, self.api_map)
        transport = select_transport(fn_index, config)

        job = JobSession(
            endpoint=endpoint,
            fn_index=fn_index,
            transport=transport,
            service_config=config,
            session_hash=self.session_hash,
            http_client=self._http,
            transports=self._transports,
            data=data,
            event_data=event_data,
            trigger_id=trigger_id,
            token=self._token,
            config=self.config,
            diffs=self._diffs,
            multiplexer_factory=lambda: self.multiplexer,
        )
        self._jobs = {j for j in self._jobs if not j.done.is_set()}
        self._jobs.add(job)
        return job.start()

    async def predict(
        self,
        endpoint: Union[int, str],
        data: Optional[List[Any]] = None,
        event_data: Any = None,
    ) -> DataEvent:
        """Submit a job and wait for its final data.

        Resolves on the ``complete`` status with the last data event seen
        before it. A job that completes without output resolves with an
        empty data event.

        Raises:
            ContinuousJobError: if the job may run forever
            JobFailedError: if the job ends with an ``error`` status
        """
        config = await self.connect()
        fn_index = lookup_job_index(endpoint, self.api_map)
        dependency = config.dependency(fn_index)
        if dependency is not None and dependency.types.continuous:
            raise ContinuousJobError(endpoint)

        result: asyncio.Future = asyncio.get_running_loop().create_future()
        seen: Dict[str, Any] = {"data": None}

        def on_data(event: DataEvent) -> None:
            seen["data"] = event

        def on_status(event: StatusEvent) -> None:
            if result.done():
                return
            if event.stage is Stage.error:
                result.set_exception(JobFailedError(event))
            elif event.stage is Stage.complete:
                # Nothing fires after a terminal status, so no data means none
                if seen["data"] is None:
                    seen["data"] = DataEvent(endpoint=event.endpoint, fn_index=event.fn_index)
                result.set_result(seen["data"])

        job = self.submit(endpoint, data, event_data)
        job.on(EventKind.data, on_data).on(EventKind.status, on_status)
        try:
            return await result
        except asyncio.CancelledError:
            await job.cancel()
            raise
        finally:
            job.destroy()

    async def component_server(self, component_id: int, fn_name: str, data: List[Any]) -> Any:
        """Call ``fn_name`` on a component's server-side handler and return its JSON output.

        The request goes to the component's own ``root_url`` when the
        descriptor sets one, otherwise to the service root.

        Raises:
            ComponentServerError: if the service cannot be reached or answers non-200
        """
        config = await self.connect()
        component = config.component(component_id)
        root_url = ((component.props or {}).get("root_url") if component else None) or config.root
        url = f"{root_url.rstrip('/')}/component_server/"
        body = {
            "data": data,
            "component_id": component_id,
            "fn_name": fn_name,
            "session_hash": self.session_hash,
        }
        try:
            resp = await self._http.post(url, json=body, headers=auth_headers(self._token))
        except RemoteServiceException as exc:
            raise ComponentServerError(component_id, exc.response.status, exc.response.title) from exc

        status = resp.get("status")
        if status != 200:
            logger.warning(f"[client:component] call rejected component_id={component_id} fn_name={fn_name} status={status}")
            raise ComponentServerError(component_id, status, f"HTTP {status}")
        return resp.get("body")

    async def close(self) -> None:
        """Release every running job and the shared stream."""
        for job in list(self._jobs):
            await job.aclose()
        self._jobs.clear()
        if self._multiplexer is not None:
            await self._multiplexer.aclose()
        logger.debug(f"[client:close] session_hash={self.session_hash}")
