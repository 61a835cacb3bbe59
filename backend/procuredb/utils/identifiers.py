from __future__ import annotations

import itertools
import os
import time
import uuid
from typing import Optional


def generate_uuid7() -> str:
    """
    Generate a UUIDv7 string (time-ordered).

    UUIDv7 layout per draft:
    - 48-bit Unix timestamp in milliseconds
    - 4-bit version (0b0111)
    - 74-bit randomness
    """
    ts_ms = int(time.time() * 1000)
    ts_bytes = ts_ms.to_bytes(6, "big", signed=False)
    rand_bytes = os.urandom(10)
    raw = bytearray(ts_bytes + rand_bytes)
    raw[6] = (raw[6] & 0x0F) | 0x70
    raw[8] = (raw[8] & 0x3F) | 0x80
    return str(uuid.UUID(bytes=bytes(raw)))


class IdSource:
    def new_id(self) -> str:
        raise NotImplementedError


class Uuid7IdSource(IdSource):
    def new_id(self) -> str:
        return generate_uuid7()


class SequentialIdSource(IdSource):
    """Deterministic ids for tests: ``<prefix>-000001``, ``<prefix>-000002``..."""

    def __init__(self, prefix: str = "id", start: int = 1):
        self.prefix = prefix
        self._counter = itertools.count(start)

    def new_id(self) -> str:
        return f"{self.prefix}-{next(self._counter):06d}"


_default_source: IdSource = Uuid7IdSource()


def resolve_id_source(ids: Optional[IdSource]) -> IdSource:
    return ids if ids is not None else _default_source
