"""Timestamp-based identifier generation.

Identifiers are ``<prefix><epoch milliseconds>``. Within one process the
millisecond component is strictly increasing per prefix, so two identifiers
minted in the same millisecond (for example two ad-hoc items in one cart)
never collide. Separate writer processes are not coordinated.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Dict


def _now_millis() -> int:
    return time.time_ns() // 1_000_000


class IdGenerator:
    """Mint ``<prefix><millis>`` identifiers that never repeat within the process."""

    def __init__(self, clock: Callable[[], int] = _now_millis) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._last: Dict[str, int] = {}

    def next_id(self, prefix: str) -> str:
        with self._lock:
            millis = self._clock()
            last = self._last.get(prefix)
            if last is not None and millis <= last:
                millis = last + 1
            self._last[prefix] = millis
        return f"{prefix}{millis}"


default_generator = IdGenerator()


def next_id(prefix: str) -> str:
    """Mint an identifier from the process-wide generator."""

    return default_generator.next_id(prefix)
