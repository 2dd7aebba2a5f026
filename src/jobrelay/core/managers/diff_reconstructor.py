"""Rebuild full output snapshots from incremental diffs.

Under the ``sse_v2`` protocol the service sends the first generated output of
a job in full and every later one as a list of edits against the previous
value of the same output slot. An edit is ``[action, path, value]``:

- ``replace``: set the value at ``path`` (empty path replaces the whole value)
- ``append``: concatenate ``value`` onto the value at ``path``
- ``add``: insert into a list at index ``path[-1]``, or set a dict key
- ``delete``: remove the list index / dict key at ``path[-1]``
"""

import copy
from typing import Any, Dict, List, Sequence

from jobrelay.core.exceptions import DiffApplicationError


def _walk(target: Any, path: Sequence[Any]) -> Any:
    current = target
    for key in path:
        try:
            current = current[int(key) if isinstance(current, list) else key]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise DiffApplicationError(f"Diff path {list(path)!r} does not exist") from exc
    return current


def _apply_edit(target: Any, path: Sequence[Any], action: str, value: Any) -> Any:
    if len(path) == 0:
        if action == "replace":
            return value
        if action == "append":
            return target + value
        raise DiffApplicationError(f"Unsupported action at root: {action}")

    parent = _walk(target, path[:-1])
    last = path[-1]
    if isinstance(parent, list):
        try:
            last = int(last)
        except (TypeError, ValueError) as exc:
            raise DiffApplicationError(f"List index expected, got {last!r}") from exc

    try:
        if action == "replace":
            parent[last] = value
        elif action == "append":
            parent[last] = parent[last] + value
        elif action == "add":
            if isinstance(parent, list):
                parent.insert(last, value)
            else:
                parent[last] = value
        elif action == "delete":
            del parent[last]
        else:
            raise DiffApplicationError(f"Unknown action: {action}")
    except (KeyError, IndexError, TypeError) as exc:
        raise DiffApplicationError(
            f"Cannot {action} at path {list(path)!r}: {exc}"
        ) from exc
    return target


def apply_diff(snapshot: Any, diff: Sequence[Sequence[Any]]) -> Any:
    """Apply ``diff`` edits in order and return the new snapshot.

    The input snapshot is not mutated; nested containers are copied first so a
    stored base value stays intact if an edit fails halfway.
    """
    result = copy.deepcopy(snapshot)
    for edit in diff:
        if len(edit) != 3:
            raise DiffApplicationError(f"Malformed diff edit: {edit!r}")
        action, path, value = edit
        result = _apply_edit(result, path or [], action, value)
    return result


class DiffReconstructor:
    """Per event id, per output slot snapshot store.

    The first output seen for an event id is stored as the base; each later
    output is treated as a diff against the stored slot. Snapshots of
    different event ids never mix.
    """

    def __init__(self) -> None:
        self._snapshots: Dict[str, List[Any]] = {}

    def apply(self, event_id: str, output: Dict[str, Any]) -> Dict[str, Any]:
        """Reconstruct ``output["data"]`` in place and return ``output``."""
        values = output.get("data")
        if not isinstance(values, list):
            raise DiffApplicationError("Output data must be a list of slot values")

        if event_id not in self._snapshots:
            self._snapshots[event_id] = [copy.deepcopy(value) for value in values]
            return output

        slots = self._snapshots[event_id]
        for i, diff in enumerate(values):
            base = slots[i] if i < len(slots) else None
            new_value = apply_diff(base, diff)
            if i < len(slots):
                slots[i] = new_value
            else:
                slots.append(new_value)
            values[i] = copy.deepcopy(new_value)
        return output

    def snapshot(self, event_id: str) -> List[Any] | None:
        slots = self._snapshots.get(event_id)
        return copy.deepcopy(slots) if slots is not None else None

    def discard(self, event_id: str) -> None:
        self._snapshots.pop(event_id, None)

    def __contains__(self, event_id: str) -> bool:
        return event_id in self._snapshots
