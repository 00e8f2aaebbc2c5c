"""Observable state store with dot-path subscriptions.

The tree is treated as immutable: every ``set`` builds a new root by
shallow-cloning the dicts along the written path and reusing every sibling
by reference. Subscribers are notified only after the new tree is committed.
"""

import copy
import sys
import traceback
from collections.abc import Callable
from typing import Any

from m2c.state import initial_state

WILDCARD = "*"

Subscriber = Callable[[Any, Any, str], None]


def get_by_path(obj: Any, path: str) -> Any:
    """Resolve ``a.b.c`` against nested dicts. Any missing segment yields None."""
    current = obj
    for key in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def set_by_path(obj: dict, path: str, value: Any) -> dict:
    """Return a new root with ``value`` at ``path``.

    Dicts on the path are shallow-copied; missing or non-dict intermediates
    are replaced by empty dicts.
    """
    keys = path.split(".")
    root = dict(obj)
    current = root
    for key in keys[:-1]:
        child = current.get(key)
        current[key] = dict(child) if isinstance(child, dict) else {}
        current = current[key]
    current[keys[-1]] = value
    return root


def path_prefixes(path: str) -> list[str]:
    """'stages.meet.status' -> ['stages', 'stages.meet', 'stages.meet.status']"""
    parts = path.split(".")
    return [".".join(parts[:i]) for i in range(1, len(parts) + 1)]


def _report(label: str, exc: BaseException) -> None:
    print(f"[Store] subscriber error on {label}: {exc!r}", file=sys.stderr)
    traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)


class Store:
    """Single source of truth for pipeline, stage and requirement data."""

    def __init__(self, initial: dict):
        self._initial = copy.deepcopy(initial)
        self._state = copy.deepcopy(initial)
        self._subscribers: dict[str, list[Subscriber]] = {}

    def get_state(self) -> dict:
        """Return the whole tree (read-only by convention)."""
        return self._state

    def get(self, path: str) -> Any:
        return get_by_path(self._state, path)

    def set(self, path_or_patch: str | dict, value: Any = None) -> None:
        """Commit a change and notify.

        ``set("stages.meet.status", "active")`` writes one dot path.
        ``set({"activeStage": "meet", ...})`` merges top-level keys, notifying
        only the keys whose value actually changed (by identity).
        """
        old_state = self._state

        if isinstance(path_or_patch, str):
            self._state = set_by_path(self._state, path_or_patch, value)
            self._notify([path_or_patch], old_state)
        elif isinstance(path_or_patch, dict):
            merged = dict(self._state)
            changed = []
            for key, new_value in path_or_patch.items():
                if merged.get(key) is not new_value:
                    merged[key] = new_value
                    changed.append(key)
            self._state = merged
            if changed:
                self._notify(changed, old_state)
        else:
            raise TypeError(f"set() expects a dot path or a dict patch, got {type(path_or_patch).__name__}")

    def subscribe(self, path: str, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback(new, old, path)`` for ``path`` or ``"*"``.

        Returns an unsubscribe function.
        """
        self._subscribers.setdefault(path, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(path)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)
                if not callbacks:
                    del self._subscribers[path]

        return unsubscribe

    def reset(self, new_state: dict | None = None) -> None:
        """Replace the whole tree and notify every existing subscriber."""
        old_state = self._state
        self._state = copy.deepcopy(new_state if new_state is not None else self._initial)

        for callback in list(self._subscribers.get(WILDCARD, [])):
            try:
                callback(self._state, old_state, WILDCARD)
            except Exception as exc:
                _report("reset '*'", exc)

        for path in list(self._subscribers):
            if path == WILDCARD:
                continue
            new_value = get_by_path(self._state, path)
            old_value = get_by_path(old_state, path)
            for callback in list(self._subscribers.get(path, [])):
                try:
                    callback(new_value, old_value, path)
                except Exception as exc:
                    _report(f"reset '{path}'", exc)

    def _notify(self, paths: list[str], old_state: dict) -> None:
        notified: set[str] = set()

        for changed in paths:
            for prefix in path_prefixes(changed):
                if prefix in notified:
                    continue
                notified.add(prefix)
                callbacks = self._subscribers.get(prefix)
                if not callbacks:
                    continue
                new_value = get_by_path(self._state, prefix)
                old_value = get_by_path(old_state, prefix)
                for callback in list(callbacks):
                    try:
                        callback(new_value, old_value, prefix)
                    except Exception as exc:
                        _report(f"'{prefix}'", exc)

            # Deeper subscribers under a replaced subtree fire only if their own value moved
            for path in list(self._subscribers):
                if path == WILDCARD or path in notified or not path.startswith(changed + "."):
                    continue
                new_value = get_by_path(self._state, path)
                old_value = get_by_path(old_state, path)
                if new_value is old_value or new_value == old_value:
                    continue
                notified.add(path)
                for callback in list(self._subscribers.get(path, [])):
                    try:
                        callback(new_value, old_value, path)
                    except Exception as exc:
                        _report(f"'{path}'", exc)

        for callback in list(self._subscribers.get(WILDCARD, [])):
            try:
                callback(self._state, old_state, WILDCARD)
            except Exception as exc:
                _report("'*'", exc)


def create_store(state: dict | None = None) -> Store:
    """Build a store over ``state`` or the default application state."""
    return Store(state if state is not None else initial_state())
