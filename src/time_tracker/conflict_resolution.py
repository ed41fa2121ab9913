"""
Conflict resolution strategies for multi-device sync.

A resolver takes a detected Conflict and a named strategy and returns a
ConflictResolution holding the record to store locally together with
provenance metadata. Strategies operate on record envelopes
(``{"id", "type", "data", "lastModified"}``); domain-specific merges only
look inside ``data``.
"""

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .checksum import Conflict
from .errors import ConflictResolutionError, UnknownStrategyError
from .utils import iso_now, to_epoch_ms

logger = logging.getLogger(__name__)

SERVER_WINS = "server_wins"
CLIENT_WINS = "client_wins"
MERGED = "merged"
USER_CHOICE = "user_choice"

TIMESTAMP_FIELDS = ("updatedAt", "lastModified", "timestamp", "createdAt")
MAJOR_FIELDS = ("id", "type", "startTime", "endTime", "projectId")

Strategy = Callable[[Conflict], Dict[str, Any]]
UserCallback = Callable[[Conflict], Any]


class TieBreak(str, Enum):
    """Which side wins when timestamps tie or scalar fields disagree."""

    SERVER = "server"
    CLIENT = "client"


@dataclass
class ConflictResolution:
    """Outcome of resolving a single conflict."""

    id: str
    type: str
    local: Dict[str, Any]
    server: Dict[str, Any]
    conflict_type: str
    resolved: bool
    strategy: str
    resolved_data: Optional[Dict[str, Any]] = None
    resolution: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "id": self.id,
            "type": self.type,
            "local": self.local,
            "server": self.server,
            "conflictType": self.conflict_type,
            "resolved": self.resolved,
            "strategy": self.strategy,
        }
        if self.resolved:
            result.update(
                {
                    "resolvedData": self.resolved_data,
                    "resolution": self.resolution,
                    "metadata": dict(self.metadata),
                }
            )
        else:
            result["error"] = self.error
        return result


def _payload(record: Dict[str, Any]) -> Dict[str, Any]:
    data = record.get("data")
    return data if isinstance(data, dict) else {}


def _identity_key(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def union_lists(*lists: List[Any]) -> List[Any]:
    """Concatenate lists dropping duplicates, keeping first-seen order."""
    seen = set()
    result = []
    for items in lists:
        for item in items:
            key = _identity_key(item)
            if key not in seen:
                seen.add(key)
                result.append(item)
    return result


def extract_timestamp(record: Dict[str, Any]) -> int:
    """Get the most specific mutation instant of a record in epoch ms.

    Looks at the envelope first, then at the payload, in the order
    updatedAt, lastModified, timestamp, createdAt. Missing means 0.
    """
    for source in (record, _payload(record)):
        for name in TIMESTAMP_FIELDS:
            value = to_epoch_ms(source.get(name))
            if value is not None:
                return value
    return 0


class ConflictResolver:
    """Registry of conflict resolution strategies and user callbacks."""

    def __init__(self, tie_break: Any = TieBreak.SERVER):
        self.tie_break = TieBreak(tie_break)
        self._strategies: Dict[str, Strategy] = {}
        self._user_callbacks: Dict[str, UserCallback] = {}

        self.register_strategy("server_wins", self._server_wins)
        self.register_strategy("client_wins", self._client_wins)
        self.register_strategy("latest_timestamp", self._latest_timestamp)
        self.register_strategy("merge_fields", self._merge_fields)
        self.register_strategy("custom_merge", self._custom_merge)
        self.register_strategy("user_choice", self._user_choice)

    @property
    def strategies(self) -> List[str]:
        return list(self._strategies)

    def register_strategy(self, name: str, strategy: Strategy) -> None:
        """Register a strategy returning ``{"data", "resolution", "metadata"}``."""
        self._strategies[name] = strategy

    def register_user_callback(self, key: str, callback: UserCallback) -> None:
        """Register a user-choice callback.

        Args:
            key: Record type (``"timeEntry"``), conflict type
                (``"modification"``) or ``"default"``.
            callback: Blocking callable or coroutine function receiving the
                Conflict and returning ``{"data": record, "selection": str}``.
        """
        self._user_callbacks[key] = callback

    def resolve(
        self, conflict: Conflict, strategy: str = "latest_timestamp"
    ) -> ConflictResolution:
        """Resolve a conflict with the named strategy.

        Strategy failures are reported as ``resolved=False``; only an
        unregistered strategy name raises.
        """
        resolver = self._strategies.get(strategy)
        if resolver is None:
            raise UnknownStrategyError(
                f"Unknown conflict resolution strategy: {strategy}"
            )

        base = dict(
            id=conflict.id,
            type=conflict.type,
            local=conflict.local,
            server=conflict.server,
            conflict_type=conflict.conflict_type,
            strategy=strategy,
        )
        try:
            result = resolver(conflict)
            metadata = {"resolvedAt": iso_now(), "resolver": strategy}
            metadata.update(result.get("metadata") or {})
            return ConflictResolution(
                resolved=True,
                resolved_data=result["data"],
                resolution=result["resolution"],
                metadata=metadata,
                **base,
            )
        except Exception as e:
            logger.warning(
                "Could not resolve %s %s with %s: %s",
                conflict.type,
                conflict.id,
                strategy,
                e,
            )
            return ConflictResolution(resolved=False, error=str(e), **base)

    def resolve_batch(
        self, conflicts: List[Conflict], default_strategy: str = "latest_timestamp"
    ) -> List[ConflictResolution]:
        """Resolve conflicts one by one, picking a strategy per severity."""
        return [
            self.resolve(
                conflict, self.select_strategy_for_conflict(conflict, default_strategy)
            )
            for conflict in conflicts
        ]

    # Built-in strategies

    def _server_wins(self, conflict: Conflict) -> Dict[str, Any]:
        return {
            "data": conflict.server,
            "resolution": SERVER_WINS,
            "metadata": {"reason": "Server data takes precedence"},
        }

    def _client_wins(self, conflict: Conflict) -> Dict[str, Any]:
        return {
            "data": conflict.local,
            "resolution": CLIENT_WINS,
            "metadata": {"reason": "Client data takes precedence"},
        }

    def _latest_timestamp(self, conflict: Conflict) -> Dict[str, Any]:
        server_time = extract_timestamp(conflict.server)
        client_time = extract_timestamp(conflict.local)
        times = {"serverTime": server_time, "clientTime": client_time}

        if server_time > client_time:
            server_wins, reason = True, "Server has more recent timestamp"
        elif client_time > server_time:
            server_wins, reason = False, "Client has more recent timestamp"
        else:
            server_wins = self.tie_break is TieBreak.SERVER
            reason = f"Identical timestamps, defaulting to {self.tie_break.value}"

        return {
            "data": conflict.server if server_wins else conflict.local,
            "resolution": SERVER_WINS if server_wins else CLIENT_WINS,
            "metadata": dict(reason=reason, **times),
        }

    def _merge_fields(self, conflict: Conflict) -> Dict[str, Any]:
        client = _payload(conflict.local)
        server = _payload(conflict.server)
        merged = self.merge_objects(client, server)
        return {
            "data": dict(conflict.server, data=merged),
            "resolution": MERGED,
            "metadata": {
                "reason": "Fields merged automatically",
                "mergedFields": self.identify_merged_fields(client, server, merged),
            },
        }

    def _custom_merge(self, conflict: Conflict) -> Dict[str, Any]:
        mergers = {
            "timeEntry": self._merge_time_entry,
            "project": self._merge_project,
            "windowRule": self._merge_window_rule,
        }
        merger = mergers.get(conflict.type)
        if merger is None:
            return self._merge_fields(conflict)
        merged, reason = merger(_payload(conflict.local), _payload(conflict.server))
        return {
            "data": dict(conflict.server, data=merged),
            "resolution": MERGED,
            "metadata": {"reason": reason},
        }

    def _user_choice(self, conflict: Conflict) -> Dict[str, Any]:
        callback = (
            self._user_callbacks.get(conflict.type)
            or self._user_callbacks.get(conflict.conflict_type)
            or self._user_callbacks.get("default")
        )
        if callback is None:
            return self._latest_timestamp(conflict)

        try:
            choice = callback(conflict)
            if inspect.isawaitable(choice):
                choice = asyncio.run(_wait_for(choice))
        except Exception as e:
            raise ConflictResolutionError(
                f"User choice resolution failed: {e}"
            ) from e

        if not isinstance(choice, dict) or not isinstance(choice.get("data"), dict):
            raise ConflictResolutionError("User choice returned no record")

        return {
            "data": choice["data"],
            "resolution": USER_CHOICE,
            "metadata": {
                "reason": "Resolved by user choice",
                "userSelection": choice.get("selection"),
            },
        }

    # Type-specific merges

    def _merge_time_entry(self, client: Dict, server: Dict):
        merged = dict(server)
        description = client.get("description") or server.get("description")
        if description is not None:
            merged["description"] = description
        if "tags" in client or "tags" in server:
            merged["tags"] = union_lists(server.get("tags") or [], client.get("tags") or [])
        if "metadata" in client or "metadata" in server:
            merged["metadata"] = {
                **(server.get("metadata") or {}),
                **(client.get("metadata") or {}),
            }
        return merged, "Time entry custom merge: server timing, client metadata"

    def _merge_project(self, client: Dict, server: Dict):
        merged = dict(server)
        for name in ("name", "description", "color"):
            value = client.get(name) or server.get(name)
            if value is not None:
                merged[name] = value
        if "settings" in client or "settings" in server:
            merged["settings"] = self.merge_objects(
                client.get("settings") or {}, server.get("settings") or {}
            )
        if "tags" in client or "tags" in server:
            merged["tags"] = union_lists(server.get("tags") or [], client.get("tags") or [])
        return merged, "Project custom merge: client display fields, merged settings"

    def _merge_window_rule(self, client: Dict, server: Dict):
        merged = dict(client)
        if "analytics" in client or "analytics" in server:
            client_stats = client.get("analytics") or {}
            server_stats = server.get("analytics") or {}
            analytics = {**client_stats, **server_stats}
            # Counters are additive across devices.
            for counter in ("triggerCount", "successCount"):
                analytics[counter] = (client_stats.get(counter) or 0) + (
                    server_stats.get(counter) or 0
                )
            merged["analytics"] = analytics
        return merged, "Window rule custom merge: client config, combined analytics"

    # Utilities

    def merge_objects(self, client: Dict, server: Dict) -> Dict:
        """Recursively merge two mappings.

        Keys present on one side are kept, nested mappings are merged, lists
        are unioned and differing scalars follow the tie-break policy.
        """
        merged = dict(client)
        for key, server_value in server.items():
            if key not in client:
                merged[key] = server_value
                continue
            client_value = client[key]
            if isinstance(client_value, dict) and isinstance(server_value, dict):
                merged[key] = self.merge_objects(client_value, server_value)
            elif isinstance(client_value, list) and isinstance(server_value, list):
                merged[key] = union_lists(client_value, server_value)
            elif client_value != server_value and self.tie_break is TieBreak.SERVER:
                merged[key] = server_value
        return merged

    @staticmethod
    def identify_merged_fields(client: Dict, server: Dict, merged: Dict) -> Dict:
        fields: Dict[str, List[str]] = {"added": [], "modified": [], "unchanged": []}
        for key in merged:
            if key not in client:
                fields["added"].append(key)
            elif key not in server or client[key] == server[key]:
                fields["unchanged"].append(key)
            else:
                fields["modified"].append(key)
        return fields

    # Severity analysis

    @staticmethod
    def _comparable_view(record: Dict[str, Any]) -> Dict[str, Any]:
        view = dict(_payload(record))
        view["id"] = record.get("id")
        view["type"] = record.get("type")
        return view

    def calculate_differences(self, conflict: Conflict) -> Dict[str, int]:
        client = self._comparable_view(conflict.local)
        server = self._comparable_view(conflict.server)
        differences = {"majorFields": 0, "minorFields": 0, "totalFields": 0}

        for key in set(client) | set(server):
            if client.get(key) != server.get(key):
                differences["totalFields"] += 1
                if key in MAJOR_FIELDS:
                    differences["majorFields"] += 1
                else:
                    differences["minorFields"] += 1
        return differences

    def analyze_conflict_severity(self, conflict: Conflict) -> str:
        """Classify a conflict as ``"high"``, ``"medium"`` or ``"low"``."""
        differences = self.calculate_differences(conflict)
        if differences["majorFields"] > 0:
            return "high"
        if differences["minorFields"] > 0:
            return "medium"
        return "low"

    def select_strategy_for_conflict(
        self, conflict: Conflict, default_strategy: str = "latest_timestamp"
    ) -> str:
        severity = self.analyze_conflict_severity(conflict)
        if severity == "high":
            return "user_choice"
        if severity == "medium":
            return "custom_merge"
        return default_strategy


async def _wait_for(awaitable):
    return await awaitable
