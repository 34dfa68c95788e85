"""
Entity references and identifiers.

Owners and posting references are opaque (kind, id) pairs; the engine
carries them and hands them back, resolving them is the caller's job.
"""

import os
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

_id_lock = threading.Lock()
_last_ms = 0
_sequence = 0


@dataclass(frozen=True)
class EntityRef:
    """Opaque reference to an external entity, e.g. EntityRef("user", "42")"""
    kind: str
    id: str

    def __post_init__(self):
        if not self.kind:
            raise ValueError("Entity reference kind must be non-empty")
        if self.id is None or self.id == "":
            raise ValueError("Entity reference id must be non-empty")
        if not isinstance(self.id, str):
            object.__setattr__(self, 'id', str(self.id))

    def to_dict(self) -> Dict[str, str]:
        return {'kind': self.kind, 'id': self.id}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['EntityRef']:
        if not data:
            return None
        return cls(kind=data['kind'], id=data['id'])

    def __str__(self) -> str:
        return f"{self.kind}:{self.id}"


def ordered_uuid() -> str:
    """
    Time-ordered UUID string.

    UUIDv7 layout: 48 bits of Unix time in milliseconds, a 12-bit counter
    for ids created within the same millisecond, then random bits. Ids from
    one process sort by creation time as plain strings.
    """
    global _last_ms, _sequence
    with _id_lock:
        now_ms = time.time_ns() // 1_000_000
        if now_ms <= _last_ms:
            now_ms = _last_ms
            _sequence += 1
            if _sequence > 0xFFF:
                now_ms += 1
                _sequence = 0
        else:
            _sequence = 0
        _last_ms = now_ms
        sequence = _sequence

    value = (now_ms & ((1 << 48) - 1)) << 80
    value |= 0x7 << 76
    value |= sequence << 64
    value |= 0x2 << 62
    value |= int.from_bytes(os.urandom(8), 'big') & ((1 << 62) - 1)
    return str(uuid.UUID(int=value))
