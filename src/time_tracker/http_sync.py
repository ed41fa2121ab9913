#!/usr/bin/env python3
"""
HTTP synchronization client for the time tracker.
Handles all HTTP communication with the sync server.
"""

import json
import logging
import platform
import socket
import time
from typing import Any, Dict, List, Optional, Tuple

import requests

from . import __version__
from .errors import TransportError
from .offline_queue import Change
from .storage import KeyValueStore
from .utils import generate_id, is_temporary_id

logger = logging.getLogger(__name__)

SYNC_PATH = "/sync"
HEALTH_PATHS = ("/health", "/ping")
CONNECT_TIMEOUT = 5
BODY_CHUNK_SIZE = 8192

# REST collection for each record type.
RESOURCE_PATHS = {
    "timeEntry": "/time-entries",
    "project": "/projects",
    "windowRule": "/window-tracking",
    "windowEvent": "/window-tracking/events",
}


class DeviceIdentifier:
    """Generates device identification information."""

    @staticmethod
    def get_device_name() -> str:
        """Get the device name for identification."""
        try:
            hostname = socket.gethostname()

            if hostname.endswith(".local"):
                hostname = hostname[:-6]

            # If hostname is generic, fall back to platform node
            if not hostname or hostname in ["localhost", "unknown"]:
                hostname = platform.node()
                if hostname.endswith(".local"):
                    hostname = hostname[:-6]

            return hostname
        except Exception:
            return f"{platform.system().lower()}-{platform.machine()}"

    @staticmethod
    def get_or_create_device_id(store: KeyValueStore, prefix: str = "desktop") -> str:
        """Get the persisted device id, generating one on first use."""
        device_id = store.get("deviceId")
        if not device_id:
            device_id = generate_id(prefix)
            store.set("deviceId", device_id)
        return device_id


class HttpSyncClient:
    """HTTP client for the sync server."""

    def __init__(
        self,
        server_url: str,
        auth_token: str = "",  # nosec B107
        device_id: str = "",
        platform_header: str = "desktop-app",
        version: str = __version__,
        timeout: float = 30,
        health_timeout: float = 5,
    ):
        self.server_url = server_url.rstrip("/")
        self.auth_token = auth_token
        self.device_id = device_id
        self.platform_header = platform_header
        self.version = version
        self.timeout = timeout
        self.health_timeout = health_timeout

    def _url(self, path: str) -> str:
        return f"{self.server_url}{path}"

    def _get_headers(self) -> Dict[str, str]:
        """Get request headers including device and authentication headers."""
        headers = {
            "Content-Type": "application/json",
            "X-Device-ID": self.device_id,
            "X-Platform": self.platform_header,
            "X-Version": self.version,
        }
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    @property
    def request_timeout(self) -> Tuple[float, float]:
        return (CONNECT_TIMEOUT, self.timeout)

    def _call(self, method: str, path: str, payload: Any = None) -> requests.Response:
        senders = {
            "get": requests.get,
            "post": requests.post,
            "put": requests.put,
            "delete": requests.delete,
        }
        kwargs: Dict[str, Any] = {
            "headers": self._get_headers(),
            "timeout": self.request_timeout,
            "stream": True,
        }
        if payload is not None:
            kwargs["json"] = payload
        return senders[method](self._url(path), **kwargs)

    def _read_body(self, response: requests.Response, started: float, label: str) -> bytes:
        # The read timeout bounds each gap between bytes, not the whole call.
        chunks = []
        for chunk in response.iter_content(chunk_size=BODY_CHUNK_SIZE):
            chunks.append(chunk)
            if time.monotonic() - started > self.timeout:
                raise TransportError(f"{label} timed out after {self.timeout}s reading the body")
        return b"".join(chunks)

    def _request(self, method: str, path: str, payload: Any = None) -> Any:
        """Perform a request and decode its JSON body.

        ``self.timeout`` is a deadline for the whole call, body included.

        Raises:
            TransportError: On network errors, timeouts, non-2xx answers or
                undecodable bodies.
        """
        label = f"{method.upper()} {path}"
        started = time.monotonic()
        try:
            response = self._call(method, path, payload)
        except requests.exceptions.Timeout as e:
            raise TransportError(f"{label} timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            raise TransportError(f"Network error on {label}: {e}") from e

        try:
            if not 200 <= response.status_code < 300:
                raise TransportError(
                    f"{label} failed: HTTP {response.status_code} - {response.text}",
                    response.status_code,
                )
            if response.status_code == 204:
                return {}
            try:
                body = self._read_body(response, started, label)
            except requests.exceptions.RequestException as e:
                raise TransportError(f"Network error reading {label}: {e}") from e
        finally:
            response.close()

        if not body.strip():
            return {}
        try:
            return json.loads(body)
        except ValueError as e:
            raise TransportError(f"Invalid JSON from {label}: {e}") from e

    def check_health(self) -> bool:
        """Probe the server; any non-2xx answer or network error means offline."""
        for path in HEALTH_PATHS:
            try:
                response = requests.get(
                    self._url(path),
                    headers=self._get_headers(),
                    timeout=(3, self.health_timeout),
                )
            except requests.exceptions.RequestException as e:
                logger.debug("Health probe %s failed: %s", path, e)
                return False
            if 200 <= response.status_code < 300:
                return True
            if response.status_code != 404:
                return False
        return False

    def post_sync(self, request: Dict[str, Any]) -> Any:
        """Send a sync request and return the decoded response body."""
        return self._request("post", SYNC_PATH, request)

    def send_change(self, change: Change) -> Dict[str, Any]:
        """Replay one queued change through the REST API.

        Creates of records with a temporary id are sent without it, carrying
        ``localId`` so the server can report the permanent id back.
        """
        base = RESOURCE_PATHS.get(change.type)
        if base is None:
            raise TransportError(f"No API endpoint for record type {change.type!r}")

        data = dict(change.data or {})
        data.pop("_pendingSync", None)
        if change.action == "create":
            if is_temporary_id(data.get("id")):
                data["localId"] = data.pop("id")
            return self._request("post", base, data) or {}
        if change.action == "update":
            return self._request("put", f"{base}/{change.record_id}", data) or {}
        try:
            return self._request("delete", f"{base}/{change.record_id}") or {}
        except TransportError as e:
            # Already deleted elsewhere.
            if e.status_code == 404:
                return {}
            raise

    def create_time_entry(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("post", RESOURCE_PATHS["timeEntry"], entry)

    def update_time_entry(self, entry_id: str, update: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("put", f"{RESOURCE_PATHS['timeEntry']}/{entry_id}", update)

    def fetch_projects(self) -> List[Dict[str, Any]]:
        projects = self._request("get", RESOURCE_PATHS["project"])
        return projects if isinstance(projects, list) else []


def server_record_id(body: Optional[Dict[str, Any]]) -> Optional[str]:
    """Extract the id the server assigned in a create response."""
    if not isinstance(body, dict):
        return None
    return body.get("_id") or body.get("id")
