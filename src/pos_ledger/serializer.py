"""Process-wide critical section for mutating requests.

The workbook has no multi-row transactions, so every mutating request runs
while holding one global lock. Acquisition waits at most ``timeout`` seconds;
the lock is released on every exit path of the guarded callable.

The in-process lock only orders threads. Front-ends that run each request in
its own process (the CLI) also hold :func:`workbook_lock`, a lock file next to
the workbook, from loading the workbook until it has been saved.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional, TypeVar

from filelock import FileLock, Timeout

from . import log
from .constants import DEFAULT_LOCK_TIMEOUT_SECONDS
from .errors import LockTimeout


T = TypeVar("T")


class RequestSerializer:
    """Single global lock with a bounded acquisition wait."""

    def __init__(self, timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS, *, lock: Optional[threading.Lock] = None) -> None:
        if timeout <= 0:
            raise ValueError("Lock timeout must be positive")
        self.timeout = timeout
        self._lock = lock if lock is not None else threading.Lock()

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def critical_section(self, name: str = "request") -> Iterator[None]:
        """Hold the lock for the duration of the ``with`` block.

        Raises:
            LockTimeout: If the lock is not acquired within ``timeout`` seconds;
                the block never runs in that case.
        """

        if not self._lock.acquire(timeout=self.timeout):
            log.error("Lock wait for '%s' exceeded %.1f seconds", name, self.timeout)
            raise LockTimeout(f"Could not acquire the request lock within {self.timeout:g} seconds")
        log.debug("Lock acquired for '%s'", name)
        try:
            yield
        finally:
            self._lock.release()
            log.debug("Lock released for '%s'", name)

    def run_exclusive(self, pipeline: Callable[[], T], *, name: str = "request") -> T:
        """Run ``pipeline`` inside the critical section and return its result."""

        with self.critical_section(name):
            return pipeline()


_process_serializer: Optional[RequestSerializer] = None
_process_serializer_guard = threading.Lock()


def get_process_serializer(timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS) -> RequestSerializer:
    """Return the serializer shared by the whole process.

    ``timeout`` only applies when the shared instance is first created.
    """

    global _process_serializer
    with _process_serializer_guard:
        if _process_serializer is None:
            _process_serializer = RequestSerializer(timeout)
        return _process_serializer


def lock_path_for(data_file: Path) -> Path:
    """Sidecar lock file guarding ``data_file`` across processes."""

    return Path(f"{data_file}.lock")


@contextmanager
def workbook_lock(data_file: Path, timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS) -> Iterator[None]:
    """Hold the inter-process lock on ``data_file`` for the ``with`` block.

    Every process that loads, mutates and saves the workbook must do all three
    inside this block, otherwise a concurrent save overwrites its changes.

    Raises:
        LockTimeout: If another process keeps the lock for more than
            ``timeout`` seconds.
    """

    lock = FileLock(str(lock_path_for(data_file)), timeout=timeout)
    try:
        lock.acquire()
    except Timeout as exc:
        log.error("Workbook lock on '%s' not acquired within %.1f seconds", data_file, timeout)
        raise LockTimeout(f"Could not acquire the workbook lock within {timeout:g} seconds") from exc
    log.debug("Workbook lock acquired for '%s'", data_file)
    try:
        yield
    finally:
        lock.release()
        log.debug("Workbook lock released for '%s'", data_file)
