"""
Offline queue of pending local mutations.

Changes made while the server is unreachable are persisted here and
replayed later. Delivery is at-least-once and strictly FIFO: draining stops
at the first failure so that dependent mutations (create, then update of
the same timer) never apply out of order.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from .checksum import compute_checksum
from .storage import KeyValueStore
from .utils import generate_id, now_ms

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIZE = 100
DEFAULT_TRIM_TO = 50


@dataclass
class Change:
    """A single queued mutation."""

    type: str
    action: str
    data: Dict[str, Any]
    id: str = field(default_factory=lambda: generate_id("sync"))
    timestamp: int = field(default_factory=now_ms)
    retry_count: int = 0
    record_id: Optional[str] = None

    def __post_init__(self):
        if self.record_id is None:
            record_id = self.data.get("id") if isinstance(self.data, dict) else None
            self.record_id = record_id or self.id

    @property
    def checksum(self) -> str:
        return compute_checksum(self.data)

    def to_wire(self) -> Dict[str, Any]:
        """Form sent to the server: identified by the record, not the queue entry."""
        return {
            "id": self.record_id,
            "type": self.type,
            "action": self.action,
            "data": self.data,
            "timestamp": self.timestamp,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "recordId": self.record_id,
            "type": self.type,
            "action": self.action,
            "data": self.data,
            "timestamp": self.timestamp,
            "retryCount": self.retry_count,
        }

    @classmethod
    def from_dict(cls, item: Dict[str, Any]) -> "Change":
        return cls(
            id=item["id"],
            type=item["type"],
            action=item["action"],
            data=item.get("data") or {},
            timestamp=item.get("timestamp") or now_ms(),
            retry_count=item.get("retryCount", 0),
            record_id=item.get("recordId"),
        )


class OfflineQueue:
    """Capacity-bounded, persisted FIFO of Changes owned by one device."""

    def __init__(
        self,
        store: KeyValueStore,
        key: str = "syncQueue",
        max_size: int = DEFAULT_MAX_SIZE,
        trim_to: int = DEFAULT_TRIM_TO,
    ):
        self.store = store
        self.key = key
        self.max_size = max_size
        self.trim_to = trim_to
        self._lock = threading.RLock()
        self._items: List[Change] = self._load()

    def _load(self) -> List[Change]:
        items = []
        for raw in self.store.get(self.key, []) or []:
            try:
                items.append(Change.from_dict(raw))
            except (KeyError, TypeError) as e:
                logger.warning("Dropping unreadable queue item %r: %s", raw, e)
        return items

    def _persist(self) -> None:
        self.store.set(self.key, [item.to_dict() for item in self._items])

    def reload(self) -> None:
        with self._lock:
            self._items = self._load()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def items(self) -> List[Change]:
        """Snapshot of the queue in FIFO order."""
        with self._lock:
            return list(self._items)

    def enqueue(self, action: str, record_type: str, data: Dict[str, Any]) -> Change:
        """Append a mutation, dropping the oldest entries past capacity."""
        change = Change(type=record_type, action=action, data=data)
        with self._lock:
            self._items.append(change)
            if len(self._items) > self.max_size:
                dropped = len(self._items) - self.trim_to
                self._items = self._items[-self.trim_to :]
                logger.info("Offline queue over capacity, dropped %d oldest items", dropped)
            self._persist()
        logger.debug("Queued %s %s: %s", action, record_type, change.record_id)
        return change

    def acknowledge(self, ids: Iterable[str]) -> int:
        """Remove entries the server has accepted. Returns how many were removed."""
        acked = set(ids)
        with self._lock:
            before = len(self._items)
            self._items = [item for item in self._items if item.id not in acked]
            removed = before - len(self._items)
            if removed:
                self._persist()
        return removed

    def drain(self, sender: Callable[[Change], bool]) -> Dict[str, Any]:
        """Replay queued changes in order through ``sender``.

        Each successfully sent change is removed. The first failure stops
        the drain and bumps that change's retry count; later changes stay
        queued behind it.
        """
        processed = 0
        failed: Optional[str] = None

        for change in self.items():
            try:
                ok = sender(change)
            except Exception as e:
                logger.warning("Sending queued change %s failed: %s", change.id, e)
                ok = False

            with self._lock:
                if ok:
                    self._items = [item for item in self._items if item.id != change.id]
                    processed += 1
                else:
                    change.retry_count += 1
                    failed = change.id
                self._persist()

            if failed:
                break

        return {"processed": processed, "remaining": len(self), "failed": failed}

    def remap_record_id(self, old_id: str, new_id: str) -> int:
        """Point queued changes at a server-assigned id."""
        count = 0
        with self._lock:
            for item in self._items:
                if item.record_id == old_id:
                    item.record_id = new_id
                    if isinstance(item.data, dict) and item.data.get("id") == old_id:
                        item.data = dict(item.data, id=new_id)
                    count += 1
            if count:
                self._persist()
        return count

    def clear(self) -> None:
        with self._lock:
            self._items = []
            self._persist()
