from typing import Any, Callable, Dict, List

from jobrelay.core.models.events import EventKind
from jobrelay.core.settings import logger

Listener = Callable[[Any], Any]


class ListenerRegistry:
    """Ordered callbacks per event kind.

    Registration order is call order. The same callable registered twice is
    called twice; ``remove`` drops every registration of that exact object
    (identity, not equality).
    """

    def __init__(self) -> None:
        self._listeners: Dict[EventKind, List[Listener]] = {}

    def add(self, kind: EventKind | str, listener: Listener) -> None:
        self._listeners.setdefault(EventKind(kind), []).append(listener)

    def remove(self, kind: EventKind | str, listener: Listener) -> None:
        kind = EventKind(kind)
        current = self._listeners.get(kind, [])
        self._listeners[kind] = [fn for fn in current if fn is not listener]

    def listeners(self, kind: EventKind | str) -> List[Listener]:
        return list(self._listeners.get(EventKind(kind), []))

    def fire(self, kind: EventKind | str, event: Any) -> None:
        """Call every listener of ``kind`` with ``event``.

        A failing listener is logged and does not stop the others.
        """
        for listener in self.listeners(kind):
            try:
                listener(event)
            except Exception as exc:
                logger.error(
                    f"[listener:error] listener failed kind={kind} listener={getattr(listener, '__name__', listener)!r} error={exc}"
                )

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return sum(len(fns) for fns in self._listeners.values())
