"""Abstract streaming channels used by job sessions and the stream multiplexer.

The engine never touches sockets or HTTP streams directly. It drives these
ports from asyncio tasks: ``open`` is awaited once, ``messages`` is iterated
until the channel ends, and ``close`` may be called at any time (including
from inside a message handler).
"""

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict


class SocketChannelPort(ABC):
    """Bidirectional JSON message channel (legacy socket transport)."""

    @abstractmethod
    async def open(self) -> None:
        """Connect; raises on connection failure."""
        pass

    @abstractmethod
    async def send(self, message: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def messages(self) -> AsyncIterator[Dict[str, Any]]:
        """Yield decoded inbound messages until the channel closes."""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass

    @property
    @abstractmethod
    def closed_cleanly(self) -> bool:
        """True once the channel ended with a normal close handshake."""
        pass


class EventStreamPort(ABC):
    """Unidirectional server-push JSON message channel."""

    @abstractmethod
    async def open(self) -> None:
        """Connect; raises on connection failure or non-2xx response."""
        pass

    @abstractmethod
    def messages(self) -> AsyncIterator[Dict[str, Any]]:
        """Yield decoded ``data:`` payloads; raises on transport errors."""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class TransportFactoryPort(ABC):
    @abstractmethod
    def socket(self, url: str, headers: Dict[str, str] | None = None) -> SocketChannelPort:
        pass

    @abstractmethod
    def event_stream(self, url: str, headers: Dict[str, str] | None = None) -> EventStreamPort:
        pass
