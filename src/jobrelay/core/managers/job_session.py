"""JobSession: one submitted job, its transport and its listeners.

Lifecycle (``JobState``)::

    idle -> awaiting-upload -> pending -> generating* -> complete | error

The session is created by ``ClientSession.submit`` and driven by a background
task. The task uploads embedded blobs, fires ``pending`` and then runs one
of four transports:

- direct: a single ``POST {root}/run/{endpoint}``
- socket (``ws``): a dedicated socket to ``{ws_root}/queue/join``
- stream (``sse``): a dedicated push stream to ``{root}/queue/join``; the
  payload goes out in a separate ``POST {root}/queue/data``
- shared (``sse_v1``/``sse_v2``): ``POST {root}/queue/join`` returns an
  event id; messages then arrive via the client's StreamMultiplexer

Every wire message of the socket and stream variants goes through
``interpret_message`` and the common emission rules in ``_handle_message``.
Terminal stages are sticky: ``_fire_status`` drops anything after the first
``complete`` or ``error``, and the transport is released exactly once.
"""

from __future__ import annotations

import asyncio
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Union
from urllib.parse import urlencode, urlsplit

from jobrelay.core.config import ClientConfig
from jobrelay.core.exceptions import (
    BROKEN_CONNECTION_MSG,
    QUEUE_FULL_MSG,
    UNEXPECTED_ERROR_MSG,
    RemoteServiceException,
    UploadError,
)
from jobrelay.core.interfaces.http_client import HttpClientPort
from jobrelay.core.interfaces.transports import (
    EventStreamPort,
    SocketChannelPort,
    TransportFactoryPort,
)
from jobrelay.core.logging_config import correlation_id_var
from jobrelay.core.managers.diff_reconstructor import DiffReconstructor
from jobrelay.core.managers.listener_registry import Listener, ListenerRegistry
from jobrelay.core.managers.message_interpreter import interpret_message
from jobrelay.core.managers.stream_multiplexer import StreamMultiplexer
from jobrelay.core.managers.transport_selector import Transport
from jobrelay.core.models.events import (
    DataEvent,
    EventKind,
    InterpretedMessage,
    LogEvent,
    MessageKind,
    StatusEvent,
)
from jobrelay.core.models.service_config import ServiceConfig
from jobrelay.core.models.status import (
    STAGE_ORDER,
    JobState,
    Stage,
    Status,
    default_error_status,
    stage_to_state,
)
from jobrelay.core.services.transfer import auth_headers, handle_blob, post_data
from jobrelay.core.settings import logger

# Services older than this expect the session hash right after the socket opens
HASH_ON_OPEN_BEFORE = (3, 6)
DEFAULT_SERVICE_VERSION = "2.0.0"

RESET_WARNING = (
    "The `/reset` endpoint could not be called. Subsequent endpoint results may be unreliable."
)


def _version_tuple(version: Optional[str]) -> tuple:
    parts = re.findall(r"\d+", version or DEFAULT_SERVICE_VERSION)
    return tuple(int(p) for p in parts[:3])


def socket_url(config: ServiceConfig) -> str:
    """``ws(s)://`` queue-join URL derived from the config root and path."""
    parts = urlsplit(config.root)
    scheme = "wss" if parts.scheme == "https" else "ws"
    path = parts.path.rstrip("/") or (config.path or "").rstrip("/")
    return f"{scheme}://{parts.netloc}{path}/queue/join"


class JobSession:
    """Handle for one submitted job.

    Listeners are registered with ``on``/``off`` (chainable) for the event
    kinds ``status``, ``data`` and ``log``. ``done`` is set once a terminal
    status fired; ``wait_started`` returns once the job reached ``pending``
    (or failed before that).
    """

    def __init__(
        self,
        *,
        endpoint: Union[int, str],
        fn_index: int,
        transport: Transport,
        service_config: ServiceConfig,
        session_hash: str,
        http_client: HttpClientPort,
        transports: TransportFactoryPort,
        data: Optional[List[Any]] = None,
        event_data: Any = None,
        trigger_id: Optional[int] = None,
        token: Optional[str] = None,
        config: Optional[ClientConfig] = None,
        diffs: Optional[DiffReconstructor] = None,
        multiplexer_factory: Optional[Callable[[], StreamMultiplexer]] = None,
    ) -> None:
        self.endpoint = "/predict" if isinstance(endpoint, int) else endpoint
        self.fn_index = fn_index
        self.transport = transport
        self.service_config = service_config
        self.session_hash = session_hash
        self._http = http_client
        self._transports = transports
        self._data = list(data or [])
        self._event_data = event_data
        self._trigger_id = trigger_id
        self._token = token
        self.config = config or ClientConfig()
        self._diffs = diffs or DiffReconstructor()
        self._multiplexer_factory = multiplexer_factory

        self._listeners = ListenerRegistry()
        self._state = JobState.idle
        self._last_stage: Optional[Stage] = None
        self._complete: Optional[Status] = None
        self._terminal = False
        self.event_id: Optional[str] = None
        self._payload: Dict[str, Any] = {}

        self._socket: Optional[SocketChannelPort] = None
        self._socket_open = False
        self._close_on_open = False
        self._stream: Optional[EventStreamPort] = None
        self._multiplexer: Optional[StreamMultiplexer] = None
        self._released = False

        self._started = asyncio.Event()
        self.done = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def root(self) -> str:
        return self.service_config.root

    @property
    def state(self) -> JobState:
        return self._state

    # ---------------- Listener API -----------------
    def on(self, kind: EventKind | str, listener: Listener) -> "JobSession":
        self._listeners.add(kind, listener)
        return self

    def off(self, kind: EventKind | str, listener: Listener) -> "JobSession":
        self._listeners.remove(kind, listener)
        return self

    def destroy(self) -> None:
        """Remove every listener of every kind."""
        self._listeners.clear()

    async def cancel(self) -> None:
        """Stop the job locally and ask the service to reset it.

        A ``complete`` status fires immediately and the transport is
        released. The reset request is best effort; a failure is only logged.
        """
        self._fire_status(Status(stage=Stage.complete, queue=False))
        if self.transport.is_shared and self.event_id is None:
            # Join still in flight; _run_shared resets once the event id is known
            logger.debug(f"[job:cancel] reset deferred until queue join returns fn_index={self.fn_index}")
            return
        await self._reset()

    async def _reset(self) -> None:
        if self.transport.is_shared or self.transport is Transport.stream:
            cancel_request: Dict[str, Any] = {"event_id": self.event_id}
        else:
            cancel_request = {"fn_index": self.fn_index, "session_hash": self.session_hash}

        try:
            resp = await self._http.post(
                f"{self.root}/reset", json=cancel_request, headers=auth_headers(self._token)
            )
        except RemoteServiceException as exc:
            logger.warning(f"{RESET_WARNING} fn_index={self.fn_index} error={exc}")
            return
        if resp.get("status") != 200:
            logger.warning(f"{RESET_WARNING} fn_index={self.fn_index} status={resp.get('status')}")

    async def wait_started(self) -> None:
        await self._started.wait()

    # ---------------- Background task -----------------
    def start(self) -> "JobSession":
        if self._task is None:
            self._task = self._spawn(self._run())
        return self

    async def aclose(self) -> None:
        """Release the transport and wait for background tasks."""
        self._release()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._tasks.discard(t))
        return task

    async def _run(self) -> None:
        token = correlation_id_var.set(self.session_hash)
        try:
            self._state = JobState.awaiting_upload
            try:
                data = await handle_blob(
                    self._http,
                    self.root,
                    self._data,
                    token=self._token,
                    chunk_size=self.config.upload_chunk_size,
                )
            except UploadError as exc:
                logger.error(f"[job:upload] upload failed fn_index={self.fn_index} error={exc}")
                self._fire_status(default_error_status(str(exc), queue=False))
                return
            if self._terminal:
                return

            self._payload = {
                "data": data,
                "event_data": self._event_data,
                "fn_index": self.fn_index,
                "trigger_id": self._trigger_id,
            }
            logger.debug(
                f"[job:submit] fn_index={self.fn_index} endpoint={self.endpoint} transport={self.transport}"
            )
            if self.transport is Transport.direct:
                await self._run_direct()
            elif self.transport is Transport.socket:
                await self._run_socket()
            elif self.transport is Transport.stream:
                await self._run_stream()
            else:
                await self._run_shared()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(f"[job:error] unexpected client exception fn_index={self.fn_index} error={exc!r}")
            self._fire_status(default_error_status(UNEXPECTED_ERROR_MSG))
        finally:
            correlation_id_var.reset(token)

    async def _run_direct(self) -> None:
        self._fire_status(Status(stage=Stage.pending, queue=False))
        path = self.endpoint if self.endpoint.startswith("/") else f"/{self.endpoint}"
        output, status_code = await post_data(
            self._http,
            f"{self.root}/run{path}",
            {**self._payload, "session_hash": self.session_hash},
            self._token,
        )
        if status_code == 200:
            self._fire_data(output.get("data"))
            self._fire_status(
                Status(stage=Stage.complete, eta=output.get("average_duration"), queue=False)
            )
        else:
            self._fire_status(
                Status(stage=Stage.error, message=output.get("error"), queue=False)
            )

    async def _run_socket(self) -> None:
        self._fire_status(Status(stage=Stage.pending, queue=True))
        socket = self._transports.socket(socket_url(self.service_config), auth_headers(self._token))
        self._socket = socket
        try:
            await socket.open()
        except RemoteServiceException as exc:
            logger.warning(f"[job:socket] connect failed fn_index={self.fn_index} error={exc}")
            self._fire_broken()
            return

        self._socket_open = True
        if self._close_on_open or self._terminal:
            logger.debug(f"[job:socket] closing socket opened after cancel fn_index={self.fn_index}")
            await socket.close()
            return

        if _version_tuple(self.service_config.version) < HASH_ON_OPEN_BEFORE:
            await socket.send({"hash": self.session_hash})

        try:
            async for message in socket.messages():
                interpreted = self._handle_message(message)
                if self._terminal:
                    break
                if interpreted is None:
                    continue
                if interpreted.kind is MessageKind.hash:
                    await socket.send({"fn_index": self.fn_index, "session_hash": self.session_hash})
                elif interpreted.kind is MessageKind.data:
                    await socket.send({**self._payload, "session_hash": self.session_hash})
        except RemoteServiceException as exc:
            logger.warning(f"[job:socket] socket failed fn_index={self.fn_index} error={exc}")
            self._fire_broken()
            return

        if not self._terminal and not socket.closed_cleanly:
            logger.warning(f"[job:socket] socket closed uncleanly fn_index={self.fn_index}")
            self._fire_broken()

    async def _run_stream(self) -> None:
        self._fire_status(Status(stage=Stage.pending, queue=True))
        params = urlencode({"fn_index": self.fn_index, "session_hash": self.session_hash})
        stream = self._transports.event_stream(
            f"{self.root}/queue/join?{params}", auth_headers(self._token)
        )
        self._stream = stream
        try:
            await stream.open()
            if self._terminal:
                await stream.close()
                return
            async for message in stream.messages():
                interpreted = self._handle_message(message)
                if self._terminal:
                    break
                if interpreted is not None and interpreted.kind is MessageKind.data:
                    self.event_id = message.get("event_id")
                    _, status_code = await post_data(
                        self._http,
                        f"{self.root}/queue/data",
                        {**self._payload, "session_hash": self.session_hash, "event_id": self.event_id},
                        self._token,
                    )
                    if status_code != 200:
                        logger.warning(
                            f"[job:stream] data post rejected fn_index={self.fn_index} status={status_code}"
                        )
                        self._fire_broken()
                        break
            else:
                if not self._terminal:
                    logger.warning(f"[job:stream] stream ended early fn_index={self.fn_index}")
                    self._fire_broken()
        except RemoteServiceException as exc:
            logger.warning(f"[job:stream] stream failed fn_index={self.fn_index} error={exc}")
            self._fire_broken()

    async def _run_shared(self) -> None:
        self._fire_status(Status(stage=Stage.pending, queue=True))
        response, status_code = await post_data(
            self._http,
            f"{self.root}/queue/join",
            {**self._payload, "session_hash": self.session_hash},
            self._token,
        )
        if status_code == 503:
            self._fire_status(default_error_status(QUEUE_FULL_MSG))
            return
        if status_code != 200:
            logger.warning(f"[job:join] queue join rejected fn_index={self.fn_index} status={status_code}")
            self._fire_status(default_error_status(BROKEN_CONNECTION_MSG))
            return
        self.event_id = str(response["event_id"])
        logger.debug(f"[job:join] joined queue fn_index={self.fn_index} event_id={self.event_id}")
        if self._multiplexer_factory is None:
            raise RuntimeError("Shared stream transport requires a multiplexer factory")
        self._multiplexer = self._multiplexer_factory()
        if self._terminal:
            # Cancelled while joining: drop the id's messages and reset it now
            self._multiplexer.unregister(self.event_id)
            await self._reset()
            return
        self._multiplexer.register(self.event_id, self._handle_message)

    # ---------------- Message handling -----------------
    def _handle_message(self, message: Dict[str, Any]) -> Optional[InterpretedMessage]:
        """Apply the emission rules to one wire message.

        Returns the interpreted message so transport loops can answer
        handshake requests, or None if handling failed.
        """
        if self._terminal:
            logger.debug(f"[job:message] ignored after terminal fn_index={self.fn_index} msg={message.get('msg')}")
            return None
        try:
            interpreted = interpret_message(message, self._last_stage)
            kind, status, data = interpreted.kind, interpreted.status, interpreted.data

            if kind is MessageKind.heartbeat:
                return interpreted
            if kind is MessageKind.update:
                if status is not None and self._complete is None:
                    self._fire_status(status)
            elif kind is MessageKind.complete:
                self._complete = status
                # Without output there is no data event to wait for
                if data is None:
                    self._fire_status(status)
            elif kind is MessageKind.unexpected_error:
                logger.error(f"[job:message] unexpected error from service fn_index={self.fn_index} message={status.message}")
                self._fire_status(default_error_status(status.message or UNEXPECTED_ERROR_MSG))
            elif kind is MessageKind.log:
                self._fire_log(data or {})
                return interpreted
            elif kind is MessageKind.generating:
                self._fire_status(status.model_copy(update={"queue": True}))
                if data is not None and self.transport.supports_diffs and self.event_id is not None:
                    data = self._diffs.apply(self.event_id, {**data, "data": list(data.get("data") or [])})
            elif kind is MessageKind.none:
                self._handle_unknown(interpreted)

            if data is not None:
                self._fire_data(data.get("data"))
                if self._complete is not None:
                    self._fire_status(self._complete)
            return interpreted
        except Exception as exc:
            logger.error(
                f"[job:message] failed to handle message fn_index={self.fn_index} msg={message.get('msg') if isinstance(message, dict) else None} error={exc!r}"
            )
            self._fire_status(default_error_status(UNEXPECTED_ERROR_MSG))
            self._release()
            return None

    def _handle_unknown(self, interpreted: InterpretedMessage) -> None:
        policy = self.config.unknown_message_policy
        if policy == "log":
            logger.warning(f"[job:message] unknown message kind={interpreted.raw_kind!r} fn_index={self.fn_index}")
        elif policy == "error":
            self._fire_status(default_error_status(f"Unknown message kind: {interpreted.raw_kind!r}"))

    # ---------------- Emission -----------------
    def _fire_status(self, status: Status) -> None:
        if self._terminal:
            logger.debug(f"[job:status] dropped after terminal stage={status.stage} fn_index={self.fn_index}")
            return

        stage = status.stage
        # Stages never move backwards; late pending-stage metrics keep the current stage
        if self._last_stage is not None and STAGE_ORDER[stage] < STAGE_ORDER[self._last_stage]:
            stage = self._last_stage

        event = StatusEvent(
            **status.model_dump(exclude={"stage", "endpoint", "fn_index", "time"}),
            stage=stage,
            endpoint=self.endpoint,
            fn_index=self.fn_index,
            time=datetime.now(timezone.utc),
        )
        self._last_stage = stage
        self._state = stage_to_state(stage)
        self._terminal = event.is_terminal()
        self._started.set()

        self._listeners.fire(EventKind.status, event)
        if self._terminal:
            logger.debug(f"[job:done] fn_index={self.fn_index} stage={stage} event_id={self.event_id}")
            self._release()
            self.done.set()

    def _fire_data(self, data: Any) -> None:
        if self._terminal:
            return
        self._listeners.fire(
            EventKind.data,
            DataEvent(data=data, endpoint=self.endpoint, fn_index=self.fn_index),
        )

    def _fire_log(self, record: Dict[str, Any]) -> None:
        self._listeners.fire(
            EventKind.log,
            LogEvent(
                log=record.get("log"),
                level=record.get("level"),
                endpoint=self.endpoint,
                fn_index=self.fn_index,
            ),
        )

    def _fire_broken(self) -> None:
        self._fire_status(default_error_status(BROKEN_CONNECTION_MSG, broken=True))

    # ---------------- Transport release -----------------
    def _release(self) -> None:
        """Release whatever transport the job owns; runs once."""
        if self._released:
            return
        self._released = True

        if self.event_id is not None:
            self._diffs.discard(self.event_id)
            if self._multiplexer is not None:
                self._multiplexer.unregister(self.event_id)
        if self._socket is not None:
            if self._socket_open:
                self._spawn(self._socket.close())
            else:
                # Still connecting; _run_socket closes it as soon as it opens
                self._close_on_open = True
        if self._stream is not None:
            self._spawn(self._stream.close())
