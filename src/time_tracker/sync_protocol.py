"""
Sync protocol codec.

Builds outbound sync requests from queued local changes and applies inbound
server changes to the local collections, running conflict detection and
resolution for every record that already exists locally.
"""

import logging
import platform
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .checksum import Conflict, RecordMap, compute_checksum, detect_conflict, find_local_record
from .conflict_resolution import ConflictResolution, ConflictResolver
from .errors import MalformedChangeError
from .utils import now_ms

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "1.0.0"
VALID_ACTIONS = ("create", "update", "delete")
RECORD_FIELDS = ("id", "type", "data", "lastModified", "timestamp")

# Collection names used by the server's grouped change format.
SERVER_COLLECTION_TYPES = {
    "timeEntries": "timeEntry",
    "projects": "project",
    "rules": "windowRule",
    "windowRules": "windowRule",
    "windowEvents": "windowEvent",
}


class SyncOutcome(str, Enum):
    APPLIED = "applied"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class SyncProcessResult:
    """What happened while applying one sync response."""

    conflicts: List[ConflictResolution] = field(default_factory=list)
    applied: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    remapped: Dict[str, str] = field(default_factory=dict)
    failed: bool = False

    @property
    def unresolved(self) -> List[ConflictResolution]:
        return [c for c in self.conflicts if not c.resolved]

    @property
    def outcome(self) -> SyncOutcome:
        if self.failed:
            return SyncOutcome.FAILED
        if self.errors:
            return SyncOutcome.PARTIAL
        return SyncOutcome.APPLIED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "conflicts": [c.to_dict() for c in self.conflicts],
            "applied": list(self.applied),
            "errors": list(self.errors),
            "remapped": dict(self.remapped),
        }


def _check_change(change: Any) -> None:
    if not isinstance(change, dict):
        raise MalformedChangeError(f"Change must be a mapping, got {type(change).__name__}")
    if change.get("id") in (None, ""):
        raise MalformedChangeError("Change is missing its id")
    if not change.get("type"):
        raise MalformedChangeError(f"Change {change.get('id')} is missing its type")
    action = change.get("action", "update")
    if action not in VALID_ACTIONS:
        raise MalformedChangeError(f"Change {change.get('id')} has invalid action {action!r}")


def _index_of(collection: List[Dict[str, Any]], record_id: Any) -> Optional[int]:
    for index, item in enumerate(collection):
        if item.get("id") == record_id:
            return index
    return None


def _to_record(change: Dict[str, Any]) -> Dict[str, Any]:
    return {name: change[name] for name in RECORD_FIELDS if name in change}


class SyncProtocol:
    """Stateless request builder and response processor."""

    version = PROTOCOL_VERSION

    def __init__(
        self,
        resolver: Optional[ConflictResolver] = None,
        default_strategy: str = "latest_timestamp",
    ):
        self.resolver = resolver or ConflictResolver()
        self.default_strategy = default_strategy

    # Outbound

    def create_sync_request(
        self,
        device_id: str,
        last_sync: Any,
        local_changes: List[Dict[str, Any]],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Build a sync request from wire-form local changes."""
        return {
            "version": self.version,
            "deviceId": device_id,
            "lastSync": last_sync,
            "timestamp": now_ms(),
            "changes": self.prepare_changes(self.optimize_changes(local_changes)),
            "metadata": metadata or self.get_device_metadata(),
        }

    @staticmethod
    def prepare_changes(changes: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [
            {
                "id": change.get("id"),
                "type": change.get("type"),
                "action": change.get("action"),
                "data": change.get("data"),
                "timestamp": change.get("timestamp"),
                "checksum": compute_checksum(change.get("data")),
            }
            for change in changes
        ]

    @staticmethod
    def optimize_changes(changes: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Collapse changes to one per ``(type, id)``.

        The surviving change sits at the position of the last change for its
        key. A create followed by updates stays a create carrying the folded
        data; a trailing delete replaces whatever came before.
        """
        folded: Dict[Tuple[Any, Any], Dict[str, Any]] = {}
        last_seen: Dict[Tuple[Any, Any], int] = {}

        for index, change in enumerate(changes):
            key = (change.get("type"), change.get("id"))
            previous = folded.get(key)
            current = dict(change)
            if (
                previous is not None
                and change.get("action") == "update"
                and previous.get("action") in ("create", "update")
            ):
                data = dict(previous.get("data") or {})
                if isinstance(change.get("data"), dict):
                    data.update(change["data"])
                current.update(action=previous["action"], data=data)
            folded[key] = current
            last_seen[key] = index

        return [folded[key] for key in sorted(folded, key=last_seen.__getitem__)]

    @staticmethod
    def get_device_metadata(
        platform_name: str = "desktop", device_name: Optional[str] = None
    ) -> Dict[str, Any]:
        metadata = {
            "platform": platform_name,
            "os": platform.system(),
            "pythonVersion": platform.python_version(),
            "timestamp": now_ms(),
        }
        if device_name:
            metadata["device"] = device_name
        return metadata

    @staticmethod
    def validate_sync_data(data: Dict[str, Any]) -> Tuple[bool, List[str]]:
        """Validate a request before it is sent."""
        errors = []
        if not data.get("version"):
            errors.append("Missing sync protocol version")
        if not data.get("deviceId"):
            errors.append("Missing device ID")

        changes = data.get("changes")
        if not isinstance(changes, list):
            errors.append("Changes must be an array")
            changes = []

        for index, change in enumerate(changes):
            if not isinstance(change, dict):
                errors.append(f"Change at index {index} is not an object")
                continue
            if not change.get("id"):
                errors.append(f"Change at index {index} missing ID")
            if not change.get("type"):
                errors.append(f"Change at index {index} missing type")
            if change.get("action") not in VALID_ACTIONS:
                errors.append(f"Change at index {index} has invalid action")

        return not errors, errors

    # Inbound

    def parse_sync_response(self, body: Any) -> Dict[str, Any]:
        """Turn a decoded response body into a normalized SyncResponse."""
        if not isinstance(body, dict):
            return {"success": False, "serverChanges": [], "error": "Malformed sync response"}
        return {
            "success": bool(body.get("success", True)),
            "serverChanges": self.normalize_server_changes(body.get("serverChanges")),
            "error": body.get("error"),
            "timestamp": body.get("timestamp"),
        }

    @staticmethod
    def normalize_server_changes(server_changes: Any) -> List[Any]:
        """Accept a record list or the server's per-collection grouping."""
        if not server_changes:
            return []
        if not isinstance(server_changes, dict):
            return list(server_changes)

        records = []
        for collection, items in server_changes.items():
            record_type = SERVER_COLLECTION_TYPES.get(collection, collection)
            for item in items or []:
                if not isinstance(item, dict) or isinstance(item.get("data"), dict):
                    records.append(item)
                    continue
                record_id = item.get("_id", item.get("id"))
                payload = {k: v for k, v in item.items() if k not in ("_id", "__v")}
                if record_id is not None:
                    payload["id"] = record_id
                record = {
                    "id": record_id,
                    "type": record_type,
                    "action": "update",
                    "data": payload,
                }
                modified = item.get("updatedAt") or item.get("lastModified")
                if modified is not None:
                    record["lastModified"] = modified
                if item.get("localId"):
                    record["localId"] = item["localId"]
                records.append(record)
        return records

    def process_sync_response(
        self,
        response: Dict[str, Any],
        local_data: RecordMap,
        strategy: Optional[str] = None,
    ) -> SyncProcessResult:
        """Apply server changes to ``local_data`` in place.

        A failed response is not applied at all. Otherwise every change is
        handled on its own: one malformed record is recorded in ``errors``
        and the rest of the batch still goes through.
        """
        result = SyncProcessResult()

        if not response.get("success"):
            result.failed = True
            result.errors.append({"type": "sync_error", "message": response.get("error")})
            return result

        for server_change in response.get("serverChanges") or []:
            try:
                _check_change(server_change)
                self._reconcile_local_id(server_change, local_data, result)

                conflict = None
                if server_change.get("action") != "delete":
                    conflict = detect_conflict(server_change, local_data)

                if conflict is None:
                    self.apply_change(server_change, local_data)
                    result.applied.append(server_change)
                    continue

                resolution = self.resolver.resolve(
                    conflict, self._strategy_for(conflict, strategy)
                )
                result.conflicts.append(resolution)
                if resolution.resolved:
                    self.replace_record(resolution.resolved_data, local_data)
                    result.applied.append(resolution.resolved_data)
                else:
                    result.errors.append(
                        {
                            "type": "conflict_error",
                            "id": conflict.id,
                            "recordType": conflict.type,
                            "error": resolution.error,
                        }
                    )
            except Exception as e:
                logger.warning("Skipping server change: %s", e)
                result.errors.append(
                    {"type": "processing_error", "change": server_change, "error": str(e)}
                )

        return result

    def _strategy_for(self, conflict: Conflict, strategy: Optional[str]) -> str:
        chosen = strategy or self.default_strategy
        if chosen == "auto":
            fallback = (
                "latest_timestamp" if self.default_strategy == "auto" else self.default_strategy
            )
            return self.resolver.select_strategy_for_conflict(conflict, fallback)
        return chosen

    @staticmethod
    def _reconcile_local_id(
        change: Dict[str, Any], local_data: RecordMap, result: SyncProcessResult
    ) -> None:
        # The server assigned a permanent id to a record created offline.
        local_id = change.get("localId")
        if not local_id or local_id == change["id"]:
            return
        record = find_local_record(local_id, change["type"], local_data)
        if record is None or find_local_record(change["id"], change["type"], local_data):
            return
        record["id"] = change["id"]
        result.remapped[local_id] = change["id"]

    @staticmethod
    def apply_change(change: Dict[str, Any], local_data: RecordMap) -> None:
        """Apply one change to the local collections.

        Every action is idempotent: create only inserts when absent, update
        merges onto the existing record or inserts it, delete ignores
        records that are already gone.
        """
        _check_change(change)
        action = change.get("action", "update")
        collection = local_data.setdefault(change["type"], [])
        index = _index_of(collection, change["id"])

        if action == "delete":
            if index is not None:
                del collection[index]
            return

        if index is None:
            collection.append(_to_record(change))
            return

        if action == "update":
            existing = collection[index]
            merged = dict(existing)
            data = change.get("data")
            if isinstance(data, dict) and isinstance(existing.get("data"), dict):
                merged["data"] = {**existing["data"], **data}
            elif data is not None:
                merged["data"] = data
            for name in ("lastModified", "timestamp"):
                if change.get(name) is not None:
                    merged[name] = change[name]
            collection[index] = merged

    @staticmethod
    def replace_record(record: Dict[str, Any], local_data: RecordMap) -> None:
        """Store a resolved record, superseding the local copy in place."""
        _check_change(record)
        collection = local_data.setdefault(record["type"], [])
        index = _index_of(collection, record["id"])
        stored = _to_record(record)
        if index is None:
            collection.append(stored)
        else:
            collection[index] = stored
