#!/usr/bin/env python3
"""
Sync Manager for the time tracker.
Orchestrates periodic sync cycles, the offline queue and local persistence.
"""

import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .errors import SyncError, TransportError, ValidationError
from .events import SYNC_ERROR, SYNC_START, SYNC_SUCCESS, EventEmitter
from .http_sync import DeviceIdentifier, HttpSyncClient, server_record_id
from .offline_queue import Change, OfflineQueue
from .storage import COLLECTION_KEYS, KeyValueStore, LocalCollections
from .sync_protocol import VALID_ACTIONS, SyncProtocol
from .utils import generate_id, is_temporary_id, now_ms

logger = logging.getLogger(__name__)

DEFAULT_PROJECT = {
    "_id": "default-project",
    "name": "General Work",
    "color": "#667eea",
    "isActive": True,
}


class SyncState(str, Enum):
    DISABLED = "disabled"
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR_BACKOFF = "error_backoff"


class SyncStatistics:
    """Collects sync cycle outcomes and durations."""

    def __init__(self):
        self.results: Dict[str, Any] = {
            "totalSyncs": 0,
            "successfulSyncs": 0,
            "failedSyncs": 0,
            "lastSyncDuration": None,
        }

    def record_sync_success(self, duration_ms: int):
        self.results["totalSyncs"] += 1
        self.results["successfulSyncs"] += 1
        self.results["lastSyncDuration"] = duration_ms

    def record_sync_failure(self, duration_ms: int):
        self.results["totalSyncs"] += 1
        self.results["failedSyncs"] += 1
        self.results["lastSyncDuration"] = duration_ms

    def get_results(self) -> Dict[str, Any]:
        return self.results.copy()


class SyncManager:
    """Owns one device's sync cycle, offline queue and local store."""

    def __init__(
        self,
        store: KeyValueStore,
        client: HttpSyncClient,
        platform_name: str = "desktop",
        protocol: Optional[SyncProtocol] = None,
        events: Optional[EventEmitter] = None,
        queue: Optional[OfflineQueue] = None,
        max_retries: int = 3,
        sync_interval: float = 30,
        strategy: Optional[str] = None,
        auto_sync: bool = True,
    ):
        self.store = store
        self.client = client
        self.platform_name = platform_name

        # Use composition - inject specialized components
        self.protocol = protocol or SyncProtocol()
        self.events = events or EventEmitter()
        self.queue = queue or OfflineQueue(store)
        self.collections = LocalCollections(store)
        self.statistics = SyncStatistics()
        self.device_identifier = DeviceIdentifier()

        self.max_retries = max_retries
        self.sync_interval = sync_interval
        self.strategy = strategy
        self.auto_sync = auto_sync

        self.last_sync = store.get("lastSync", 0)
        self.is_online = True
        self.consecutive_failures = 0
        self.state = SyncState.DISABLED

        self._sync_lock = threading.Lock()
        self._store_lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def device_id(self) -> str:
        return self.client.device_id

    @property
    def is_syncing(self) -> bool:
        return self._sync_lock.locked()

    def init(self, start_timer: bool = True) -> None:
        """Load persisted sync state and start the periodic sync."""
        logger.info("Initializing %s sync manager", self.platform_name)
        self.last_sync = self.store.get("lastSync", 0)
        self.queue.reload()
        self.state = SyncState.IDLE
        if start_timer and self.auto_sync:
            self.start_periodic_sync()

    # Sync cycle

    def perform_sync(self) -> Dict[str, Any]:
        """Run one sync cycle. Never raises; failures come back as results."""
        if not self._sync_lock.acquire(blocking=False):
            return {"success": False, "error": "Sync already in progress"}

        started = time.monotonic()
        self.state = SyncState.SYNCING
        try:
            self.events.emit(SYNC_START, {"timestamp": now_ms()})
            result = self._sync_cycle()
            self.statistics.record_sync_success(self._elapsed_ms(started))
            self.state = SyncState.IDLE
            return result
        except SyncError as e:
            return self._handle_failure(str(e), started)
        except Exception as e:
            logger.exception("Unexpected error during sync")
            return self._handle_failure(str(e), started)
        finally:
            self._sync_lock.release()

    def _sync_cycle(self) -> Dict[str, Any]:
        logger.info("Starting sync...")
        if not self.client.check_health():
            raise TransportError("Server is not reachable")
        self.is_online = True

        pending = self.queue.items()
        request = self.protocol.create_sync_request(
            self.device_id,
            self.last_sync,
            [change.to_wire() for change in pending],
            metadata=self.protocol.get_device_metadata(
                self.platform_name, self.device_identifier.get_device_name()
            ),
        )
        valid, errors = self.protocol.validate_sync_data(request)
        if not valid:
            raise ValidationError(errors)

        body = self.client.post_sync(request)
        response = self.protocol.parse_sync_response(body)
        if not response["success"]:
            raise SyncError(response.get("error") or "Server rejected sync")

        with self._store_lock:
            local_data = self.collections.load()
            result = self.protocol.process_sync_response(response, local_data, self.strategy)
            self.collections.save(local_data)

        self.queue.acknowledge(change.id for change in pending)
        for old_id, new_id in result.remapped.items():
            self.queue.remap_record_id(old_id, new_id)

        # The server only re-offers changes newer than the cursor.
        if result.unresolved:
            logger.warning(
                "%d conflicts unresolved, keeping sync cursor at %s",
                len(result.unresolved),
                self.last_sync,
            )
        else:
            self.last_sync = now_ms()
            self.store.set("lastSync", self.last_sync)
        self.consecutive_failures = 0

        queue_items = len(self.queue)
        logger.info(
            "Sync completed: %d sent, %d applied, %d conflicts, %d errors",
            len(pending),
            len(result.applied),
            len(result.conflicts),
            len(result.errors),
        )
        self.events.emit(SYNC_SUCCESS, {"timestamp": self.last_sync, "queueItems": queue_items})
        if result.errors:
            self.events.emit(
                SYNC_ERROR,
                {
                    "error": f"{len(result.errors)} server changes could not be applied",
                    "partial": True,
                    "errors": result.errors,
                },
            )

        return {
            "success": True,
            "timestamp": self.last_sync,
            "outcome": result.outcome.value,
            "sent": len(pending),
            "applied": len(result.applied),
            "conflicts": len(result.conflicts),
            "errors": result.errors,
            "queueItems": queue_items,
        }

    def _handle_failure(self, error: str, started: float) -> Dict[str, Any]:
        self.consecutive_failures += 1
        self.statistics.record_sync_failure(self._elapsed_ms(started))
        self.state = SyncState.ERROR_BACKOFF
        logger.warning(
            "Sync failed (%d/%d): %s", self.consecutive_failures, self.max_retries, error
        )

        if self.consecutive_failures >= self.max_retries:
            if self.is_online:
                logger.warning("Too many failed syncs, switching to offline mode")
            self.is_online = False
            self.events.emit(SYNC_ERROR, {"error": error})

        return {"success": False, "error": error}

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    def force_sync(self) -> Dict[str, Any]:
        return self.perform_sync()

    # Scheduling

    def tick(self) -> Optional[Dict[str, Any]]:
        """Run one scheduled tick: reconnect if offline, then sync."""
        if self.state is SyncState.DISABLED:
            return None
        if self.state is SyncState.ERROR_BACKOFF:
            self.state = SyncState.IDLE
        if not self.is_online and not self.check_connectivity():
            return None
        return self.perform_sync()

    def _run_periodic(self) -> None:
        while not self._stop_event.wait(self.sync_interval):
            self.tick()

    def start_periodic_sync(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_periodic, name="time-tracker-sync", daemon=True
        )
        self._thread.start()

    def stop_periodic_sync(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        self._thread = None

    def destroy(self) -> None:
        self.stop_periodic_sync()
        self.state = SyncState.DISABLED

    # Connectivity and offline queue

    def check_connectivity(self) -> bool:
        """Probe the server; coming back online flushes the offline queue."""
        reachable = self.client.check_health()
        if reachable and not self.is_online:
            logger.info("Server reachable again, leaving offline mode")
            self.is_online = True
            self.consecutive_failures = 0
            self.flush_queue()
        return reachable

    def flush_queue(self) -> Dict[str, Any]:
        """Replay the offline queue through direct API calls."""
        if not self._sync_lock.acquire(blocking=False):
            return {"processed": 0, "remaining": len(self.queue), "failed": None, "skipped": True}
        try:
            result = self.queue.drain(self._send_queued)
        finally:
            self._sync_lock.release()
        logger.info(
            "Flushed offline queue: %d sent, %d remaining",
            result["processed"],
            result["remaining"],
        )
        return result

    def _send_queued(self, change: Change) -> bool:
        try:
            body = self.client.send_change(change)
        except TransportError as e:
            logger.warning("Queued %s %s not delivered: %s", change.action, change.type, e)
            return False

        if change.action == "create" and is_temporary_id(change.record_id):
            new_id = server_record_id(body)
            if new_id:
                self._adopt_server_id(change.type, change.record_id, new_id)
        return True

    def _adopt_server_id(self, record_type: str, old_id: str, new_id: str) -> None:
        with self._store_lock:
            records = self.collections.get(record_type)
            for record in records:
                if record.get("id") == old_id:
                    record["id"] = new_id
                    if isinstance(record.get("data"), dict):
                        record["data"] = {
                            k: v for k, v in record["data"].items() if k != "_pendingSync"
                        }
                        record["data"]["id"] = new_id
            self.collections.set(record_type, records)
        self.queue.remap_record_id(old_id, new_id)

    # Online-first local mutations

    def _store_server_record(self, record_type: str, body: Any) -> None:
        records = self.protocol.normalize_server_changes({COLLECTION_KEYS[record_type]: [body]})
        with self._store_lock:
            local_data = {record_type: self.collections.get(record_type)}
            for record in records:
                if isinstance(record, dict) and record.get("id"):
                    self.protocol.apply_change(record, local_data)
            self.collections.set(record_type, local_data[record_type])

    def _apply_locally(self, record_type: str, action: str, data: Dict[str, Any]) -> None:
        with self._store_lock:
            local_data = {record_type: self.collections.get(record_type)}
            self.protocol.apply_change(
                {
                    "id": data["id"],
                    "type": record_type,
                    "action": action,
                    "data": data,
                    "lastModified": now_ms(),
                },
                local_data,
            )
            self.collections.set(record_type, local_data[record_type])

    def _mutate(
        self,
        record_type: str,
        action: str,
        data: Dict[str, Any],
        online_call: Optional[Callable[[], Any]] = None,
    ) -> Dict[str, Any]:
        if action not in VALID_ACTIONS:
            return {"success": False, "error": f"Invalid action: {action}"}

        if online_call is not None and self.is_online:
            try:
                body = online_call()
                if action == "delete":
                    self._apply_locally(record_type, action, data)
                else:
                    self._store_server_record(record_type, body)
                return {"success": True, "data": body}
            except TransportError as e:
                logger.warning("%s %s failed online, queueing: %s", action, record_type, e)

        self.queue.enqueue(action, record_type, data)
        if record_type != "windowEvent":
            self._apply_locally(record_type, action, data)
        return {"success": True, "data": data, "queued": True}

    def _send_now(self, record_type: str, action: str, data: Dict[str, Any]) -> Callable[[], Any]:
        return lambda: self.client.send_change(Change(type=record_type, action=action, data=data))

    def create_time_entry(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        """Create a time entry online, or queue it under a temporary id."""
        if self.is_online:
            try:
                body = self.client.create_time_entry(entry)
                self._store_server_record("timeEntry", body)
                return {"success": True, "data": body}
            except TransportError as e:
                logger.warning("Creating time entry online failed, queueing: %s", e)

        local_entry = dict(entry, id=generate_id("local"), _pendingSync=True)
        return self._mutate("timeEntry", "create", local_entry)

    def update_time_entry(self, entry_id: str, update: Dict[str, Any]) -> Dict[str, Any]:
        data = dict(update, id=entry_id)
        online_call = None
        if not is_temporary_id(entry_id):
            online_call = lambda: self.client.update_time_entry(entry_id, update)  # noqa: E731
        return self._mutate("timeEntry", "update", data, online_call)

    def delete_time_entry(self, entry_id: str) -> Dict[str, Any]:
        data = {"id": entry_id}
        online_call = None
        if not is_temporary_id(entry_id):
            online_call = self._send_now("timeEntry", "delete", data)
        return self._mutate("timeEntry", "delete", data, online_call)

    def _save(self, record_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        if data.get("id"):
            action = "update"
        else:
            action = "create"
            data = dict(data, id=generate_id("local"))
        online_call = None
        if not (action == "update" and is_temporary_id(data["id"])):
            online_call = self._send_now(record_type, action, data)
        return self._mutate(record_type, action, data, online_call)

    def save_project(self, project: Dict[str, Any]) -> Dict[str, Any]:
        return self._save("project", project)

    def save_window_rule(self, rule: Dict[str, Any]) -> Dict[str, Any]:
        return self._save("windowRule", rule)

    def record_window_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """Queue a window event; events travel with the next sync request."""
        return self._mutate("windowEvent", "create", dict(event))

    def get_projects(self) -> List[Dict[str, Any]]:
        """Get projects from the server, falling back to the local cache."""
        if self.is_online:
            try:
                projects = self.client.fetch_projects()
                for project in projects:
                    self._store_server_record("project", project)
                return projects
            except TransportError as e:
                logger.warning("Could not fetch projects, using cache: %s", e)

        cached = [record.get("data") for record in self.collections.get("project")]
        return [project for project in cached if project] or [dict(DEFAULT_PROJECT)]

    def get_sync_status(self) -> Dict[str, Any]:
        return {
            "lastSync": self.last_sync,
            "queueLength": len(self.queue),
            "isSyncing": self.is_syncing,
            "isOnline": self.is_online,
            "state": self.state.value,
            "deviceId": self.device_id,
            "platform": self.platform_name,
            "retryCount": self.consecutive_failures,
            "autoSync": self.auto_sync,
            "statistics": self.statistics.get_results(),
        }


def main():
    """Command line interface for the sync manager."""
    import sys

    from .config import get_config
    from .platforms import create_sync_manager

    if len(sys.argv) == 1 or "--help" in sys.argv:
        print("Sync Manager for Time Tracker")
        print("Usage: python -m time_tracker [command]")
        print("Commands:")
        print("  status    Show sync status")
        print("  sync      Run one sync cycle now")
        print("  queue     List pending offline changes")
        print("  flush     Replay the offline queue through the API")
        print("  watch     Sync periodically until interrupted")
        print("\nEnvironment Variables:")
        print("  TIME_TRACKER_SERVER_URL   Sync server base URL (required for sync)")
        print("  TIME_TRACKER_AUTH_TOKEN   Bearer token for authentication")
        print("  TIME_TRACKER_PLATFORM     desktop, extension or web")
        return

    config = get_config()
    logging.basicConfig(
        level=logging.DEBUG if config.verbose_logging else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    command = sys.argv[1]
    if command not in ("status", "sync", "queue", "flush", "watch"):
        print(f"Unknown command: {command}")
        print("Use --help for usage information")
        return

    if not config.server_url and command != "status" and command != "queue":
        print("Error: No sync server configured.")
        print("Set TIME_TRACKER_SERVER_URL or server_url in settings.json.")
        return

    sync_manager = create_sync_manager(config)

    if command == "status":
        status = sync_manager.get_sync_status()
        print("Sync Status:")
        print(f"  Device: {status['deviceId']} ({status['platform']})")
        print(f"  Server: {config.server_url or 'not configured'}")
        print(f"  Pending changes: {status['queueLength']}")
        print(f"  Last sync: {status['lastSync'] or 'never'}")

    elif command == "sync":
        result = sync_manager.perform_sync()
        if result["success"]:
            print(
                f"Sync completed: {result['sent']} sent, {result['applied']} applied, "
                f"{result['conflicts']} conflicts, {len(result['errors'])} errors"
            )
        else:
            print(f"Sync failed: {result['error']}")

    elif command == "queue":
        items = sync_manager.queue.items()
        print(f"{len(items)} pending change(s)")
        for change in items:
            print(
                f"  {change.id}  {change.action:<6} {change.type:<12} "
                f"{change.record_id}  retries={change.retry_count}"
            )

    elif command == "flush":
        result = sync_manager.flush_queue()
        print(f"Flush completed: {result['processed']} sent, {result['remaining']} remaining")

    elif command == "watch":
        sync_manager.init()
        print(f"Syncing every {sync_manager.sync_interval}s, press Ctrl+C to stop")
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            print("\nReceived interrupt signal")
        finally:
            sync_manager.destroy()


if __name__ == "__main__":
    main()
