"""
Local Storage and Persistent Bindings
=====================================

Durable key-value storage (one JSON file per key) plus a generic binding
that keeps an in-memory value in sync with one storage slot.

- Reads fall back to the initial value when the slot is missing or unreadable
- The initial value is not written back until the first real change
- Write/serialization failures are recorded on the binding, never raised
- Storage areas sharing a directory see each other's writes (cross-tab sync);
  last observed write wins, there is no transactional guarantee
"""

import json
import logging
import os
import tempfile
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Iterator, List, Optional, TypeVar, Union
from urllib.parse import quote, unquote

from .config import Settings, get_settings
from .errors import StorageError, StorageErrorCode

logger = logging.getLogger(__name__)

T = TypeVar("T")

STORAGE_KEYS = {
    "cases": "hornet_cases",
    "api_key": "hornet_api_key",
    "preferences": "hornet_preferences",
}

_FILE_SUFFIX = ".json"


# =============================================================================
# Change notification
# =============================================================================

@dataclass
class StorageEvent:
    """A slot changed. new_value is None when the slot was removed."""
    key: str
    old_value: Optional[str]
    new_value: Optional[str]
    source_area: str


class StorageEventBus:
    """Fan-out of storage events between areas sharing one directory"""

    def __init__(self):
        self._listeners: List[Callable[[StorageEvent], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Callable[[StorageEvent], None]) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: StorageEvent):
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(event)


_buses: Dict[str, StorageEventBus] = {}
_buses_lock = threading.Lock()


def get_event_bus(base_path: Union[str, Path]) -> StorageEventBus:
    """One bus per storage directory"""
    resolved = str(Path(base_path).resolve())
    with _buses_lock:
        if resolved not in _buses:
            _buses[resolved] = StorageEventBus()
        return _buses[resolved]


# =============================================================================
# Storage area
# =============================================================================

@dataclass
class StorageUsage:
    total_bytes: int
    item_count: int
    items: Dict[str, int] = field(default_factory=dict)

    @property
    def total_kb(self) -> float:
        return round(self.total_bytes / 1024, 2)

    @property
    def total_mb(self) -> float:
        return round(self.total_bytes / 1024 / 1024, 2)


class LocalStorage:
    """
    File-backed key-value storage area.

    Each instance is one execution context ("tab"): it receives change
    events for writes made by other instances on the same directory,
    never for its own writes.

    Usage:
        storage = LocalStorage("./.hornet_storage")
        storage.set_item("hornet_api_key", '"AIza..."')
    """

    def __init__(
        self,
        base_path: Optional[Union[str, Path]] = None,
        quota_bytes: Optional[int] = None,
        settings: Optional[Settings] = None
    ):
        settings = settings or get_settings()
        self.base_path = Path(base_path or settings.storage_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.quota_bytes = quota_bytes if quota_bytes is not None else settings.storage_quota_bytes
        self.area_id = str(uuid.uuid4())

        self._bus = get_event_bus(self.base_path)
        self._listeners: List[Callable[[StorageEvent], None]] = []
        self._unsubscribe = self._bus.subscribe(self._on_bus_event)
        self._snapshot: Dict[str, Optional[str]] = {}

    def _path_for(self, key: str) -> Path:
        return self.base_path / (quote(key, safe="") + _FILE_SUFFIX)

    @staticmethod
    def _size_of(key: str, value: str) -> int:
        return len(key.encode("utf-8")) + len(value.encode("utf-8"))

    def get_item(self, key: str) -> Optional[str]:
        """Raw string value of the slot, None if absent"""
        path = self._path_for(key)
        try:
            value = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            value = None
        except (OSError, UnicodeDecodeError) as e:
            raise StorageError(
                "ไม่สามารถอ่านข้อมูลจากที่จัดเก็บได้",
                StorageErrorCode.READ_FAILED,
                metadata={"key": key, "original_error": str(e)},
            ) from e
        self._snapshot[key] = value
        return value

    def set_item(self, key: str, value: str):
        """
        Write the slot.

        Raises:
            StorageError: QUOTA_EXCEEDED if the area would exceed its quota,
                WRITE_FAILED on I/O errors
        """
        usage = self.usage_info()
        projected = usage.total_bytes - usage.items.get(key, 0) + self._size_of(key, value)
        if projected > self.quota_bytes:
            raise StorageError(
                "พื้นที่จัดเก็บข้อมูลเต็ม ข้อมูลอาจไม่ถูกบันทึก",
                StorageErrorCode.QUOTA_EXCEEDED,
                metadata={"key": key, "projected_bytes": projected, "quota_bytes": self.quota_bytes},
            )

        path = self._path_for(key)
        old_value = self._read_quietly(path)
        tmp_name = None
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.base_path, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
            os.replace(tmp_name, path)
        except OSError as e:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StorageError(
                "ไม่สามารถบันทึกข้อมูลได้",
                StorageErrorCode.WRITE_FAILED,
                metadata={"key": key, "original_error": str(e)},
            ) from e

        self._snapshot[key] = value
        self._bus.publish(StorageEvent(key, old_value, value, self.area_id))

    def remove_item(self, key: str):
        path = self._path_for(key)
        old_value = self._read_quietly(path)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            raise StorageError(
                "ไม่สามารถลบข้อมูลได้",
                StorageErrorCode.WRITE_FAILED,
                metadata={"key": key, "original_error": str(e)},
            ) from e

        self._snapshot[key] = None
        self._bus.publish(StorageEvent(key, old_value, None, self.area_id))

    def keys(self) -> List[str]:
        return sorted(
            unquote(p.name[:-len(_FILE_SUFFIX)])
            for p in self.base_path.glob("*" + _FILE_SUFFIX)
        )

    def usage_info(self) -> StorageUsage:
        items = {}
        for key in self.keys():
            value = self._read_quietly(self._path_for(key))
            if value is not None:
                items[key] = self._size_of(key, value)
        return StorageUsage(total_bytes=sum(items.values()), item_count=len(items), items=items)

    @staticmethod
    def _read_quietly(path: Path) -> Optional[str]:
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return None

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def add_listener(self, listener: Callable[[StorageEvent], None]) -> Callable[[], None]:
        """Listen for changes made by other storage areas"""
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _on_bus_event(self, event: StorageEvent):
        if event.source_area == self.area_id:
            return
        self._snapshot[event.key] = event.new_value
        self._dispatch(event)

    def _dispatch(self, event: StorageEvent):
        for listener in list(self._listeners):
            listener(event)

    def refresh(self) -> int:
        """
        Detect changes written by other processes since the last read.

        Returns:
            Number of change events dispatched
        """
        dispatched = 0
        for key in set(self._snapshot) | set(self.keys()):
            current = self._read_quietly(self._path_for(key))
            previous = self._snapshot.get(key)
            if current != previous:
                self._snapshot[key] = current
                self._dispatch(StorageEvent(key, previous, current, source_area="external"))
                dispatched += 1
        return dispatched

    def close(self):
        self._unsubscribe()
        self._listeners.clear()


# =============================================================================
# Binding
# =============================================================================

def _default_serialize(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _default_deserialize(raw: str) -> Any:
    return json.loads(raw)


class StorageBinding(Generic[T]):
    """
    In-memory value bound to one storage slot.

    The in-memory value is authoritative: when persisting fails the value
    still changes and the failure is exposed through `error`.
    """

    def __init__(
        self,
        storage: LocalStorage,
        key: str,
        initial_value: T,
        serialize: Optional[Callable[[T], str]] = None,
        deserialize: Optional[Callable[[str], T]] = None,
        sync_tabs: bool = True
    ):
        self.storage = storage
        self.key = key
        self.initial_value = initial_value
        self._serialize = serialize or _default_serialize
        self._deserialize = deserialize or _default_deserialize
        self._subscribers: List[Callable[[T], None]] = []
        self._error: Optional[StorageError] = None
        self._value: T = self._load()
        self._remove_listener = storage.add_listener(self._on_storage_event) if sync_tabs else None

    def _load(self) -> T:
        try:
            raw = self.storage.get_item(self.key)
        except StorageError as e:
            logger.error(f"Failed to read from storage: key={self.key} error={e.metadata.get('original_error')}")
            self._error = e
            return self.initial_value

        if raw is None:
            return self.initial_value

        try:
            return self._deserialize(raw)
        except Exception as e:
            logger.error(f"Failed to parse stored value, using defaults: key={self.key} error={e}")
            self._error = StorageError(
                "ข้อมูลที่บันทึกไว้เสียหาย ใช้ค่าเริ่มต้นแทน",
                StorageErrorCode.DESERIALIZE_FAILED,
                metadata={"key": self.key, "original_error": str(e)},
            )
            return self.initial_value

    @property
    def value(self) -> T:
        return self._value

    @property
    def error(self) -> Optional[StorageError]:
        return self._error

    @property
    def quota_exceeded(self) -> bool:
        return self._error is not None and self._error.code == StorageErrorCode.QUOTA_EXCEEDED.value

    def set(self, value: Union[T, Callable[[T], T]]) -> T:
        """
        Replace the value (or apply an updater function) and persist it.

        Returns:
            The new in-memory value
        """
        next_value = value(self._value) if callable(value) else value
        self._value = next_value
        self._persist(next_value)
        self._notify()
        return next_value

    def _persist(self, value: T):
        try:
            serialized = self._serialize(value)
        except Exception as e:
            logger.error(f"Failed to serialize value: key={self.key} error={e}")
            self._error = StorageError(
                "ไม่สามารถแปลงข้อมูลเพื่อบันทึกได้",
                StorageErrorCode.SERIALIZE_FAILED,
                metadata={"key": self.key, "original_error": str(e)},
            )
            return

        try:
            self.storage.set_item(self.key, serialized)
        except StorageError as e:
            if e.code == StorageErrorCode.QUOTA_EXCEEDED.value:
                logger.warning(f"Storage quota exceeded: key={self.key} size={len(serialized)}")
            else:
                logger.error(f"Failed to write to storage: key={self.key} error={e.metadata.get('original_error')}")
            self._error = e
            return

        self._error = None
        logger.debug(f"Persisted to storage: key={self.key} size={len(serialized)}")

    def remove(self):
        """Delete the slot and reset to the initial value"""
        try:
            self.storage.remove_item(self.key)
        except StorageError as e:
            logger.error(f"Failed to remove from storage: key={self.key}")
            self._error = e
            return
        self._value = self.initial_value
        self._error = None
        self._notify()

    def _on_storage_event(self, event: StorageEvent):
        if event.key != self.key:
            return

        if event.new_value is None:
            self._value = self.initial_value
        else:
            try:
                self._value = self._deserialize(event.new_value)
            except Exception as e:
                logger.error(f"Failed to sync from storage event: key={self.key} error={e}")
                return

        logger.debug(f"Synced from another storage area: key={self.key}")
        self._notify()

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Called with the new value after every local or synced change"""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self):
        for callback in list(self._subscribers):
            callback(self._value)

    def close(self):
        if self._remove_listener:
            self._remove_listener()
            self._remove_listener = None
        self._subscribers.clear()

    def __iter__(self) -> Iterator[Any]:
        # value, set_value, {"error", "remove"} = bind(...)
        return iter((self._value, self.set, {"error": self._error, "remove": self.remove}))


def bind(
    storage: LocalStorage,
    key: str,
    initial_value: T,
    serialize: Optional[Callable[[T], str]] = None,
    deserialize: Optional[Callable[[str], T]] = None,
    sync_tabs: bool = True
) -> StorageBinding[T]:
    """Bind an in-memory value to a storage slot"""
    return StorageBinding(storage, key, initial_value, serialize, deserialize, sync_tabs)


# =============================================================================
# Non-binding helpers
# =============================================================================

def get_storage_item(storage: LocalStorage, key: str, default: Any = None) -> Any:
    try:
        raw = storage.get_item(key)
        return _default_deserialize(raw) if raw else default
    except (StorageError, ValueError):
        return default


def set_storage_item(storage: LocalStorage, key: str, value: Any) -> bool:
    try:
        storage.set_item(key, _default_serialize(value))
        return True
    except (StorageError, TypeError, ValueError):
        return False


def remove_storage_item(storage: LocalStorage, key: str) -> bool:
    try:
        storage.remove_item(key)
        return True
    except StorageError:
        return False
