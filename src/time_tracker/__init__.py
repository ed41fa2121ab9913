"""
Time Tracker Sync - offline-first synchronization core for the time tracker.

This package keeps time entries, projects and window-tracking rules
consistent across the desktop app, the browser extension and the web app:

- Checksum based conflict detection
- Pluggable conflict resolution strategies
- Sync request/response protocol handling
- Persistent offline queue
- Per-platform sync manager with periodic background sync
"""

__version__ = "1.0.0"
__license__ = "MIT"

from .conflict_resolution import ConflictResolver
from .offline_queue import OfflineQueue
from .sync import SyncManager
from .sync_protocol import SyncProtocol

__all__ = [
    "ConflictResolver",
    "OfflineQueue",
    "SyncManager",
    "SyncProtocol",
]
