"""Client-local key/value storage with cross-window change notifications.

Mirrors the browser's local storage: string keys and values, synchronous
access, and a change event that reaches every *other* window sharing the
same storage area (the writing window is not notified).
"""

import json
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from .base import StoreError, Subscription

logger = structlog.get_logger()


@dataclass(frozen=True)
class StorageEvent:
    key: Optional[str]
    old_value: Optional[str]
    new_value: Optional[str]
    source: str  # window id of the writer


StorageListener = Callable[[StorageEvent], None]


class _StorageListenerHandle(Subscription):
    def __init__(self, storage: "LocalStorage", window_id: str, listener: StorageListener) -> None:
        self.window_id = window_id
        self.listener = listener
        self._storage = storage
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if self._active:
            self._active = False
            self._storage._remove_listener(self)


class LocalStorage:
    """Key/value storage area shared by all windows of one client.

    When ``path`` is given the whole area is persisted as a JSON object after
    every change and reloaded on construction.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = Path(path) if path is not None else None
        self._items: Dict[str, str] = {}
        self._listeners: List[_StorageListenerHandle] = []
        self._lock = Lock()
        if self._path is not None and self._path.exists():
            self._items = self._read_file(self._path)
        logger.info(
            "local_storage_initialized",
            path=str(self._path) if self._path else None,
            keys=len(self._items),
        )

    @staticmethod
    def _read_file(path: Path) -> Dict[str, str]:
        try:
            items = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error("local_storage_unreadable", path=str(path), error=str(e))
            raise StoreError(f"Local storage file {path} could not be loaded: {e}") from e
        if not isinstance(items, dict) or not all(isinstance(v, str) for v in items.values()):
            logger.error("local_storage_unreadable", path=str(path), error="not a string map")
            raise StoreError(f"Local storage file {path} does not hold a JSON object of strings")
        return items

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._items.get(key)

    def set_item(self, key: str, value: str, source: str = "") -> None:
        with self._lock:
            old_value = self._items.get(key)
            self._items[key] = value
            try:
                self._flush()
            except OSError:
                # Memory must not run ahead of the file
                if old_value is None:
                    del self._items[key]
                else:
                    self._items[key] = old_value
                raise
        self._notify(StorageEvent(key, old_value, value, source))

    def remove_item(self, key: str, source: str = "") -> None:
        with self._lock:
            if key not in self._items:
                return
            old_value = self._items.pop(key)
            try:
                self._flush()
            except OSError:
                self._items[key] = old_value
                raise
        self._notify(StorageEvent(key, old_value, None, source))

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._items)

    def add_listener(self, window_id: str, listener: StorageListener) -> Subscription:
        """Receive change events caused by windows other than ``window_id``."""
        handle = _StorageListenerHandle(self, window_id, listener)
        with self._lock:
            self._listeners.append(handle)
        return handle

    def _remove_listener(self, handle: _StorageListenerHandle) -> None:
        with self._lock:
            if handle in self._listeners:
                self._listeners.remove(handle)

    def _flush(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(self._items), encoding="utf-8")
        tmp.replace(self._path)

    def _notify(self, event: StorageEvent) -> None:
        with self._lock:
            targets: List[Tuple[str, StorageListener]] = [
                (h.window_id, h.listener) for h in self._listeners if h.window_id != event.source
            ]
        for window_id, listener in targets:
            try:
                listener(event)
            except Exception as e:
                logger.error("storage_listener_error", window_id=window_id, key=event.key, error=str(e))
