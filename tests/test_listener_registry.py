from jobrelay.core.managers.listener_registry import ListenerRegistry
from jobrelay.core.models.events import EventKind


def test_fire_in_registration_order_with_duplicates():
    registry = ListenerRegistry()
    calls = []

    def first(event):
        calls.append(("first", event))

    def second(event):
        calls.append(("second", event))

    registry.add("status", first)
    registry.add(EventKind.status, second)
    registry.add("status", first)
    registry.fire("status", 1)

    assert calls == [("first", 1), ("second", 1), ("first", 1)]
    assert len(registry) == 3


def test_remove_matches_identity_only():
    registry = ListenerRegistry()
    calls = []

    class Equalish:
        def __eq__(self, other):
            return True

        def __hash__(self):
            return 0

        def __call__(self, event):
            calls.append(event)

    a, b = Equalish(), Equalish()
    registry.add("data", a)
    registry.add("data", b)
    registry.remove("data", a)
    registry.fire("data", "x")

    assert registry.listeners("data") == [b]
    assert calls == ["x"]


def test_kinds_are_independent():
    registry = ListenerRegistry()
    seen = []
    registry.add("log", seen.append)
    registry.fire("data", "ignored")
    registry.fire("log", "kept")
    assert seen == ["kept"]


def test_failing_listener_does_not_stop_others():
    registry = ListenerRegistry()
    seen = []

    def broken(event):
        raise ValueError("listener bug")

    registry.add("status", broken)
    registry.add("status", seen.append)
    registry.fire("status", "s")
    assert seen == ["s"]


def test_clear_is_idempotent():
    registry = ListenerRegistry()
    registry.add("status", print)
    registry.add("data", print)
    registry.clear()
    registry.clear()
    assert len(registry) == 0
    assert registry.listeners("status") == []


def test_clear_drops_duplicates_and_stops_firing():
    registry = ListenerRegistry()
    seen = []
    registry.add("status", seen.append)
    registry.add("status", seen.append)
    registry.add("log", seen.append)
    registry.clear()
    registry.fire("status", "s")
    registry.fire("log", "l")
    assert seen == []
    assert len(registry) == 0
