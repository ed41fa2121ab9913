"""
Record fingerprints and conflict detection.

Checksums are an optimization for spotting content drift between a local
record and its server counterpart. They are not a security primitive, so
detection falls back to a structural comparison whenever two checksums
happen to collide.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

RecordMap = Dict[str, List[Dict[str, Any]]]

MODIFICATION = "modification"
DATA_MISMATCH = "data_mismatch"

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


@dataclass
class Conflict:
    """A local record and a server record that disagree."""

    id: str
    type: str
    local: Dict[str, Any]
    server: Dict[str, Any]
    conflict_type: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "local": self.local,
            "server": self.server,
            "conflictType": self.conflict_type,
        }


def _to_json(value: Any) -> str:
    return json.dumps(
        value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str
    )


def _to_base36(number: int) -> str:
    if number == 0:
        return "0"
    sign = "-" if number < 0 else ""
    number = abs(number)
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return sign + "".join(reversed(digits))


def _rolling_hash(text: str) -> int:
    # Hash UTF-16 code units. Nested keys are sorted and floats use Python's repr,
    # so this is a local fingerprint, not byte-compatible with JSON.stringify.
    encoded = text.encode("utf-16-le")
    value = 0
    for i in range(0, len(encoded), 2):
        code_unit = encoded[i] | (encoded[i + 1] << 8)
        value = (value * 31 + code_unit) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return value


def compute_checksum(data: Any) -> str:
    """Compute a deterministic fingerprint of a record payload.

    Mapping keys are sorted before hashing, so two payloads that differ only
    in key insertion order produce the same checksum.
    """
    if isinstance(data, dict):
        text = "|".join(f"{key}:{_to_json(data[key])}" for key in sorted(data))
    else:
        text = _to_json(data)
    return _to_base36(_rolling_hash(text))


def record_timestamp(record: Dict[str, Any]) -> Any:
    """Get the last-mutation marker of a record envelope, if any."""
    value = record.get("lastModified")
    if value is None:
        value = record.get("timestamp")
    return value


def find_local_record(
    record_id: Any, record_type: Any, local_data: RecordMap
) -> Optional[Dict[str, Any]]:
    """Find the local record matching ``(type, id)``."""
    for item in local_data.get(record_type) or []:
        if item.get("id") == record_id:
            return item
    return None


def detect_conflict(
    server_change: Dict[str, Any], local_data: RecordMap
) -> Optional[Conflict]:
    """Check whether a server change conflicts with the local copy.

    Metadata is compared first, content second: differing timestamps are a
    modification conflict, differing payloads a data mismatch. A server
    change with no local counterpart is a plain insert and never conflicts.
    """
    record_id = server_change.get("id")
    record_type = server_change.get("type")
    local = find_local_record(record_id, record_type, local_data)
    if local is None:
        return None

    local_time = record_timestamp(local)
    server_time = record_timestamp(server_change)
    if local_time is not None and server_time is not None and local_time != server_time:
        return Conflict(record_id, record_type, local, server_change, MODIFICATION)

    local_payload = local.get("data")
    server_payload = server_change.get("data")
    if (
        compute_checksum(local_payload) != compute_checksum(server_payload)
        or local_payload != server_payload
    ):
        return Conflict(record_id, record_type, local, server_change, DATA_MISMATCH)

    return None
