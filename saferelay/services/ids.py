"""Identifier generation.

Components receive an :class:`IdGenerator` instead of minting ids from
model defaults, so tests can swap in the deterministic counter.
"""

from __future__ import annotations

import itertools
import threading
from typing import Protocol, runtime_checkable
from uuid import uuid4


@runtime_checkable
class IdGenerator(Protocol):
    def new_id(self, prefix: str) -> str: ...


class UUIDGenerator:
    """Random, collision-resistant ids such as ``inc_3f2a...``."""

    __slots__ = ()

    def new_id(self, prefix: str) -> str:
        return f"{prefix}_{uuid4().hex}"


class MonotonicIdGenerator:
    """Process-local counter ids such as ``inc_000001``."""

    __slots__ = ("_counter", "_lock")

    def __init__(self, start: int = 1) -> None:
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def new_id(self, prefix: str) -> str:
        with self._lock:
            value = next(self._counter)
        return f"{prefix}_{value:06d}"
