"""
Scoped memory allocation with optional leak tracking.

Every buffer that carries key material (private exponent, public values,
shared secret) is taken from an Allocator and handed back with free(), which
wipes it. The LeakDetective variant additionally remembers where each live
buffer was allocated so the host can report leaks at shutdown.

Exports:
- Allocator, LeakDetective
- AllocationFailure, LeakRecord
- get_allocator() / set_allocator() for the process-wide default
"""

from __future__ import annotations

import inspect
import os
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import List, Optional, Union


class AllocationFailure(MemoryError):
    pass


@dataclass(frozen=True)
class LeakRecord:
    count: int
    filename: str
    line: int
    size: int


def _wipe(buffer: bytearray) -> None:
    for i in range(len(buffer)):
        buffer[i] = 0


class Allocator:
    """Pass-through allocator: zero-filled bytearrays, wiped on free."""

    def _new_buffer(self, size: int) -> bytearray:
        if not isinstance(size, int) or size < 0:
            raise AllocationFailure(f"Invalid allocation size: {size!r}")
        try:
            return bytearray(size)
        except MemoryError as e:
            raise AllocationFailure(f"Could not allocate {size} bytes") from e

    def allocate(self, size: int) -> bytearray:
        """Return a new zero-filled buffer of `size` bytes."""
        return self._new_buffer(size)

    def allocate_as_chunk(self, size: int) -> bytearray:
        return self.allocate(size)

    def free(self, buffer: Optional[bytearray]) -> None:
        """Wipe and release `buffer`. None is ignored."""
        if buffer is None:
            return
        _wipe(buffer)

    def reallocate(self, buffer: Optional[bytearray], size: int) -> Optional[bytearray]:
        """
        Move `buffer` into a new buffer of `size` bytes.
        The smaller of the two sizes is copied; the old buffer is freed.
        """
        if buffer is None:
            return None
        try:
            new_buffer = self.allocate(size)
        except AllocationFailure:
            self.free(buffer)
            raise
        n = min(len(buffer), size)
        new_buffer[:n] = buffer[:n]
        self.free(buffer)
        return new_buffer

    def clone_bytes(self, data: Optional[Union[bytes, bytearray, memoryview]]) -> Optional[bytearray]:
        """Copy `data` into a newly allocated buffer."""
        if data is None:
            return None
        data = bytes(data)
        new_buffer = self.allocate(len(data))
        new_buffer[:] = data
        return new_buffer

    def outstanding(self) -> int:
        """Number of live allocations; untracked allocators always report 0."""
        return 0

    def report_leaks(self) -> List[LeakRecord]:
        return []


class _Allocation:
    __slots__ = ("buffer", "filename", "line", "size")

    def __init__(self, buffer: bytearray, filename: str, line: int):
        self.buffer = buffer
        self.filename = filename
        self.line = line
        self.size = len(buffer)


class LeakDetective(Allocator):
    """
    Allocator that records the call-site of every live allocation.

    Live allocations are kept in insertion order (oldest first) and guarded by
    a single lock, so unrelated exchange objects on different threads can
    allocate and free concurrently.
    """

    def __init__(self):
        self._allocations: "OrderedDict[int, _Allocation]" = OrderedDict()
        self._lock = threading.Lock()

    @staticmethod
    def _call_site() -> tuple:
        # Skip frames belonging to this module so the site is the real caller.
        frame = inspect.currentframe()
        here = os.path.normcase(__file__)
        while frame is not None and os.path.normcase(frame.f_code.co_filename) == here:
            frame = frame.f_back
        if frame is None:
            return ("<unknown>", 0)
        return (frame.f_code.co_filename, frame.f_lineno)

    def _track(self, buffer: bytearray) -> bytearray:
        filename, line = self._call_site()
        with self._lock:
            self._allocations[id(buffer)] = _Allocation(buffer, filename, line)
        return buffer

    def allocate(self, size: int) -> bytearray:
        return self._track(self._new_buffer(size))

    def free(self, buffer: Optional[bytearray]) -> None:
        if buffer is None:
            return
        with self._lock:
            entry = self._allocations.get(id(buffer))
            if entry is None or entry.buffer is not buffer:
                raise AllocationFailure("Freeing a buffer this allocator does not own")
            del self._allocations[id(buffer)]
        _wipe(buffer)

    def outstanding(self) -> int:
        with self._lock:
            return len(self._allocations)

    def report_leaks(self) -> List[LeakRecord]:
        """
        Walk live allocations newest-first and aggregate consecutive entries
        that come from the same call-site.
        """
        records: List[LeakRecord] = []
        with self._lock:
            entries = list(reversed(self._allocations.values()))

        count = 0
        size = 0
        for i, entry in enumerate(entries):
            count += 1
            size += entry.size
            nxt = entries[i + 1] if i + 1 < len(entries) else None
            if nxt is None or (nxt.filename, nxt.line) != (entry.filename, entry.line):
                records.append(LeakRecord(count, entry.filename, entry.line, size))
                count = 0
                size = 0
        return records


# ---------------------------------------------------------------------------
# Process-wide default
# ---------------------------------------------------------------------------

_default_allocator: Optional[Allocator] = None
_default_lock = threading.Lock()


def get_allocator() -> Allocator:
    """Return the process-wide allocator, building it from config on first use."""
    global _default_allocator
    with _default_lock:
        if _default_allocator is None:
            from .config import get_settings

            settings = get_settings()
            _default_allocator = LeakDetective() if settings.leak_detective else Allocator()
        return _default_allocator


def set_allocator(allocator: Optional[Allocator]) -> None:
    """Install `allocator` as the process-wide default (None resets it)."""
    global _default_allocator
    with _default_lock:
        _default_allocator = allocator
