"""Per-platform wiring of the sync manager."""

import logging
from dataclasses import dataclass
from typing import Optional

from .config import Config
from .conflict_resolution import ConflictResolver, TieBreak
from .http_sync import DeviceIdentifier, HttpSyncClient
from .offline_queue import OfflineQueue
from .storage import EncryptedFileStore, JsonFileStore, KeyValueStore, derive_key
from .sync import SyncManager
from .sync_protocol import SyncProtocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlatformProfile:
    """How a platform identifies itself to the server."""

    name: str
    header: str
    device_prefix: str


DESKTOP = PlatformProfile("desktop", "desktop-app", "desktop")
EXTENSION = PlatformProfile("extension", "browser-extension", "ext")
WEB = PlatformProfile("web", "web", "web")

PLATFORMS = {profile.name: profile for profile in (DESKTOP, EXTENSION, WEB)}


def get_platform(name: str) -> PlatformProfile:
    try:
        return PLATFORMS[name]
    except KeyError:
        raise ValueError(
            f"Unknown platform {name!r}, expected one of: {', '.join(sorted(PLATFORMS))}"
        ) from None


def open_store(config: Config, platform: PlatformProfile) -> KeyValueStore:
    """Open the platform's local store, encrypted when a key or passphrase is set."""
    path = config.data_dir / f"{platform.name}-sync.json"
    key = config.get("encryption_key")
    passphrase = config.get("encryption_passphrase")
    if not key and passphrase:
        key = derive_key(passphrase)
    if key:
        return EncryptedFileStore(path.with_suffix(".enc"), key)
    return JsonFileStore(path)


def create_sync_manager(
    config: Config,
    platform: Optional[str] = None,
    store: Optional[KeyValueStore] = None,
) -> SyncManager:
    """Build a fully wired sync manager for one platform."""
    profile = get_platform(platform or config.get("platform", "desktop"))
    if store is None:
        store = open_store(config, profile)

    device_id = DeviceIdentifier.get_or_create_device_id(store, profile.device_prefix)
    client = HttpSyncClient(
        config.server_url,
        auth_token=config.get("auth_token", ""),
        device_id=device_id,
        platform_header=profile.header,
        timeout=config.get("request_timeout", 30),
        health_timeout=config.get("health_timeout", 5),
    )
    resolver = ConflictResolver(tie_break=TieBreak(config.get("conflict_tie_break", "server")))
    strategy = config.get("conflict_strategy", "latest_timestamp")
    queue = OfflineQueue(
        store,
        max_size=config.get("queue_max_size", 100),
        trim_to=config.get("queue_trim_size", 50),
    )

    logger.debug("Creating %s sync manager for device %s", profile.name, device_id)
    return SyncManager(
        store,
        client,
        platform_name=profile.name,
        protocol=SyncProtocol(resolver, default_strategy=strategy),
        queue=queue,
        max_retries=config.get("max_retries", 3),
        sync_interval=config.sync_interval,
        strategy=strategy,
        auto_sync=config.auto_sync,
    )
