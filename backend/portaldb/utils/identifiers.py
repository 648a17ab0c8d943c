from __future__ import annotations

import os
import time
import uuid
from typing import Optional


def generate_uuid7(now_ms: Optional[int] = None) -> str:
    """
    Generate a UUIDv7 string (time-ordered).

    Used as the opaque id of break records, audit events and push logs so
    that ids sort roughly by creation time.

    Layout:
    - 48-bit Unix timestamp in milliseconds
    - 4-bit version (0b0111)
    - 2-bit variant (0b10)
    - remaining bits random
    """
    ts_ms = int(time.time() * 1000) if now_ms is None else int(now_ms)
    raw = bytearray(ts_ms.to_bytes(6, "big", signed=False) + os.urandom(10))
    raw[6] = (raw[6] & 0x0F) | 0x70
    raw[8] = (raw[8] & 0x3F) | 0x80
    return str(uuid.UUID(bytes=bytes(raw)))
