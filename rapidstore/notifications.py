"""
Change notification.

Observers subscribe to a resource path. A change at a path reaches the
observers of that path, of its ancestors (when they asked for
descendants) and of everything below it. Delivery is synchronous and
fire-and-forget: a failing observer is logged and does not stop the
others or the mutation that triggered it.
"""

import logging
import threading
import weakref
from collections import defaultdict
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from rapidstore.metrics import record_change_notification

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[str], None]


def _normalize(path: str) -> str:
    return path.strip().strip("/")


class _StrongRef:
    """Strong counterpart of weakref.WeakMethod: calling it returns the callback."""

    __slots__ = ("_callback",)

    def __init__(self, callback: ChangeCallback):
        self._callback = callback

    def __call__(self) -> ChangeCallback:
        return self._callback


class ChangeNotifier:
    """Registry of path observers."""

    def __init__(self):
        self._observers: Dict[str, List[Tuple[Callable[[], Optional[ChangeCallback]], bool]]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, path: str, callback: ChangeCallback, descendants: bool = True, weak: bool = False) -> None:
        """
        Register a callback for changes at path.

        Args:
            path: Resource path to observe, e.g. "message" or "formdata/3"
            callback: Called with the changed path
            descendants: Also fire for changes below path (e.g. "message/7")
            weak: Hold a bound-method callback weakly; the subscription
                ends when its object is garbage collected
        """
        if weak:
            ref = weakref.WeakMethod(callback)
        else:
            ref = _StrongRef(callback)
        with self._lock:
            self._observers[_normalize(path)].append((ref, descendants))

    def unsubscribe(self, path: str, callback: ChangeCallback) -> None:
        key = _normalize(path)
        with self._lock:
            remaining = [
                entry for entry in self._observers.get(key, [])
                if entry[0]() is not None and entry[0]() != callback
            ]
            if remaining:
                self._observers[key] = remaining
            else:
                self._observers.pop(key, None)

    def observer_count(self, path: Optional[str] = None) -> int:
        with self._lock:
            self._prune()
            if path is None:
                return sum(len(entries) for entries in self._observers.values())
            return len(self._observers.get(_normalize(path), []))

    def _prune(self) -> None:
        """Drop weak subscriptions whose owner is gone. Caller holds the lock."""
        for observed in list(self._observers):
            live = [entry for entry in self._observers[observed] if entry[0]() is not None]
            if live:
                self._observers[observed] = live
            else:
                del self._observers[observed]

    def _collect(self, changed: str) -> List[ChangeCallback]:
        callbacks = []
        with self._lock:
            self._prune()
            for observed, entries in self._observers.items():
                for ref, descendants in entries:
                    callback = ref()
                    if callback is None:
                        continue
                    if observed == changed:
                        callbacks.append(callback)
                    elif changed.startswith(observed + "/") and descendants:
                        callbacks.append(callback)
                    elif observed.startswith(changed + "/"):
                        callbacks.append(callback)
        return callbacks

    def notify_change(self, path: str) -> int:
        """
        Announce that the resource at path changed.

        Returns:
            Number of observers notified
        """
        changed = _normalize(path)
        callbacks = self._collect(changed)
        record_change_notification(changed.split("/", 1)[0])
        logger.debug(f"Change at {changed}: notifying {len(callbacks)} observer(s)")

        for callback in callbacks:
            try:
                callback(changed)
            except Exception:
                logger.exception(f"Change observer failed for path {changed}")
        return len(callbacks)


class ResultSet:
    """
    Rows produced by a query, bound to the resource path they were read from.

    When that path changes the result set is marked stale and its
    observers are called; rows are never re-read. Call close() (or use
    it as a context manager) to stop watching the path. The notifier
    holds the subscription weakly, so an unreferenced result set stops
    watching once collected.
    """

    def __init__(
        self,
        path: str,
        columns: Sequence[str],
        rows: Sequence[Sequence[Any]],
        notifier: Optional[ChangeNotifier] = None,
    ):
        self.path = path
        self.columns = tuple(columns)
        self.rows = [tuple(row) for row in rows]
        self.stale = False
        self._observers: List[Callable[["ResultSet"], None]] = []
        self._notifier = notifier
        if notifier is not None:
            notifier.subscribe(path, self._on_change, weak=True)

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[tuple]:
        return iter(self.rows)

    def __getitem__(self, index: int) -> tuple:
        return self.rows[index]

    def __enter__(self) -> "ResultSet":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def as_dicts(self) -> List[Dict[str, Any]]:
        return [dict(zip(self.columns, row)) for row in self.rows]

    def first(self) -> Optional[Dict[str, Any]]:
        if not self.rows:
            return None
        return dict(zip(self.columns, self.rows[0]))

    def column(self, name: str) -> List[Any]:
        index = self.columns.index(name)
        return [row[index] for row in self.rows]

    def register_observer(self, callback: Callable[["ResultSet"], None]) -> None:
        self._observers.append(callback)

    def unregister_observer(self, callback: Callable[["ResultSet"], None]) -> None:
        self._observers = [cb for cb in self._observers if cb != callback]

    def close(self) -> None:
        if self._notifier is not None:
            self._notifier.unsubscribe(self.path, self._on_change)
            self._notifier = None
        self._observers = []

    def _on_change(self, changed_path: str) -> None:
        self.stale = True
        for callback in list(self._observers):
            callback(self)
