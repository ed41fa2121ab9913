"""Small helpers shared across the sync core."""

import random
import string
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

_ID_ALPHABET = string.ascii_lowercase + string.digits


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def random_suffix(length: int = 9) -> str:
    return "".join(random.choice(_ID_ALPHABET) for _ in range(length))


def generate_id(prefix: str) -> str:
    """Generate ids like ``sync_1718000000000_k3j9x0a1b``."""
    return f"{prefix}_{now_ms()}_{random_suffix()}"


def is_temporary_id(record_id: Any) -> bool:
    """Check whether an id was generated locally and not yet assigned by the server."""
    return isinstance(record_id, str) and record_id.startswith("local_")


def to_epoch_ms(value: Any) -> Optional[int]:
    """Convert epoch milliseconds, ISO-8601 strings or datetimes to epoch ms.

    Returns None when the value cannot be interpreted as an instant.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.lstrip("-").isdigit():
            return int(text)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return to_epoch_ms(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_data_directory() -> Path:
    """Get the user data directory for local sync state."""
    return Path.home() / ".local" / "share" / "TimeTracker" / "data"
