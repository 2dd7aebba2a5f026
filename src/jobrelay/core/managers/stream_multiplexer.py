"""StreamMultiplexer: one shared server-push connection for many jobs.

Under the ``sse_v1``/``sse_v2`` protocols every job of a client session
receives its messages over a single stream opened at
``{root}/queue/data?session_hash=...``. Messages carry the ``event_id`` the
service assigned when the job joined the queue; this class routes them to the
callback registered for that id.

Routing rules:
1. No ``event_id``: broadcast to every registered callback.
2. Registered ``event_id``: dispatch on the next loop turn (``call_soon``).
   A ``process_completed`` message removes the id from the outstanding set and
   closes the connection once nothing is outstanding.
3. Unknown ``event_id``: buffer until the job registers, then replay in order.

A transport error (or the server ending the stream while jobs are still
outstanding) is broadcast as a synthetic ``unexpected_error`` message and the
connection is closed. Closing forgets finished ids; the next registration
reopens the connection.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional, Set
from urllib.parse import urlencode

from jobrelay.core.exceptions import BROKEN_CONNECTION_MSG
from jobrelay.core.interfaces.transports import EventStreamPort, TransportFactoryPort
from jobrelay.core.logging_config import correlation_id_var
from jobrelay.core.services.transfer import auth_headers
from jobrelay.core.settings import logger

MessageCallback = Callable[[Dict[str, Any]], None]

COMPLETED_MSG = "process_completed"


class StreamMultiplexer:
    """Routes messages of the shared stream to per-event-id callbacks.

    Attributes:
        url: Shared stream endpoint, parameterized by the session hash
    """

    def __init__(
        self,
        transports: TransportFactoryPort,
        root: str,
        session_hash: str,
        token: Optional[str] = None,
    ) -> None:
        self._transports = transports
        self._session_hash = session_hash
        self._token = token
        self.url = f"{root}/queue/data?{urlencode({'session_hash': session_hash})}"

        self._callbacks: Dict[str, MessageCallback] = {}
        self._pending: Dict[str, List[Dict[str, Any]]] = {}
        self._outstanding: Set[str] = set()
        # Ids whose job already finished; late messages for them are dropped
        self._retired: Set[str] = set()

        self._stream: Optional[EventStreamPort] = None
        self._reader: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    @property
    def outstanding(self) -> Set[str]:
        return set(self._outstanding)

    def pending(self, event_id: str) -> List[Dict[str, Any]]:
        """Messages buffered for ``event_id`` that no callback has seen yet."""
        return list(self._pending.get(event_id, []))

    # ---------------- Registration -----------------
    def register(self, event_id: str, callback: MessageCallback) -> None:
        """Replay buffered messages for ``event_id``, then start routing to ``callback``.

        Replay happens inline, in arrival order, and the buffer entry is
        deleted. If the replay already finished the job (the callback
        unregistered itself), the id is not registered and the connection is
        left alone.
        """
        buffered = self._pending.pop(event_id, [])
        if buffered:
            logger.debug(
                f"[stream:replay] replaying buffered messages event_id={event_id} count={len(buffered)}"
            )
        for message in buffered:
            self._deliver(callback, message)

        if event_id in self._retired:
            logger.debug(f"[stream:register] job finished during replay event_id={event_id}")
            return

        self._callbacks[event_id] = callback
        self._outstanding.add(event_id)
        logger.debug(
            f"[stream:register] event_id={event_id} outstanding={len(self._outstanding)}"
        )
        if not self.is_open:
            self.open()

    def unregister(self, event_id: str) -> None:
        """Stop routing to ``event_id`` and close the connection if nothing is outstanding."""
        self._callbacks.pop(event_id, None)
        self._pending.pop(event_id, None)
        self._retired.add(event_id)
        if event_id in self._outstanding:
            self._outstanding.discard(event_id)
            if not self._outstanding:
                self.close()

    # ---------------- Connection lifecycle -----------------
    def open(self) -> None:
        if self._stream is not None:
            return
        stream = self._transports.event_stream(self.url, auth_headers(self._token))
        self._stream = stream
        self._reader = self._spawn(self._read(stream))
        logger.debug(f"[stream:open] url={self.url}")

    def close(self) -> None:
        """Close the shared connection; safe to call repeatedly and from callbacks."""
        stream, self._stream = self._stream, None
        if stream is None:
            return
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
        # Finished ids get no more messages once this connection is gone.
        # Buffers stay: their jobs are still joining and replay them on register.
        self._retired.clear()
        self._spawn(stream.close())
        logger.debug(f"[stream:close] url={self.url}")

    async def aclose(self) -> None:
        """Close the connection and wait for background tasks to finish."""
        self.close()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._tasks.discard(t))
        return task

    async def _read(self, stream: EventStreamPort) -> None:
        token = correlation_id_var.set(self._session_hash)
        try:
            await stream.open()
            async for message in stream.messages():
                if stream is not self._stream:
                    break
                self._route(message)
            else:
                if stream is self._stream:
                    logger.warning(
                        f"[stream:ended] server closed stream outstanding={len(self._outstanding)}"
                    )
                    self._fail()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if stream is self._stream:
                logger.warning(f"[stream:error] url={self.url} error={exc}")
                self._fail()
        finally:
            correlation_id_var.reset(token)

    # ---------------- Routing -----------------
    def _route(self, message: Dict[str, Any]) -> None:
        event_id = message.get("event_id")
        if not event_id:
            self._broadcast(message)
            return

        callback = self._callbacks.get(event_id)
        if callback is not None:
            if message.get("msg") == COMPLETED_MSG:
                self._outstanding.discard(event_id)
                if not self._outstanding:
                    self.close()
            asyncio.get_running_loop().call_soon(self._deliver, callback, message)
        elif event_id in self._retired:
            logger.debug(
                f"[stream:drop] message for finished job event_id={event_id} msg={message.get('msg')}"
            )
        else:
            self._pending.setdefault(event_id, []).append(message)

    def _broadcast(self, message: Dict[str, Any]) -> None:
        loop = asyncio.get_running_loop()
        for callback in list(self._callbacks.values()):
            loop.call_soon(self._deliver, callback, message)

    def _fail(self) -> None:
        self._broadcast({"msg": "unexpected_error", "message": BROKEN_CONNECTION_MSG})
        self.close()

    @staticmethod
    def _deliver(callback: MessageCallback, message: Dict[str, Any]) -> None:
        try:
            callback(message)
        except Exception as exc:
            logger.error(f"[stream:callback] callback failed msg={message.get('msg')} error={exc}")
