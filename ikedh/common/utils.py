"""Utility helpers for the DH core and its host scripts."""

from __future__ import annotations

import hashlib
import os
import sys
from typing import Iterable, Optional, TextIO, Union

from .allocator import LeakRecord


# ---------------------------------------------------------------------------
# Randomness
# ---------------------------------------------------------------------------

class RandomnessUnavailable(RuntimeError):
    pass


class SystemRandomSource:
    """Cryptographically secure random bytes from the operating system."""

    def get_bytes(self, count: int) -> bytes:
        if not isinstance(count, int) or count <= 0:
            raise ValueError("count must be a positive integer")
        try:
            data = os.urandom(count)
        except (OSError, NotImplementedError) as e:
            raise RandomnessUnavailable(f"Secure random source failed: {e}") from e
        if len(data) != count:
            raise RandomnessUnavailable("Secure random source returned a short read")
        return data


# ---------------------------------------------------------------------------
# Hash / Display Helpers
# ---------------------------------------------------------------------------

def sha256_hex(data: Union[bytes, bytearray, memoryview]) -> str:
    """Return the SHA-256 hex digest of data."""
    return hashlib.sha256(bytes(data)).hexdigest()


def format_leak(record: LeakRecord) -> str:
    if record.count != 1:
        return f'LEAK: "{record.count} * File {record.filename}, Line {record.line}"'
    return f'LEAK: "{record.filename}, Line {record.line}"'


def print_leak_report(records: Iterable[LeakRecord], stream: Optional[TextIO] = None) -> int:
    """Print one LEAK line per call-site to stderr. Returns the leaked allocation count."""
    stream = stream or sys.stderr
    total = 0
    for record in records:
        print(format_leak(record), file=stream)
        total += record.count
    return total


def print_banner(title: str) -> None:
    """Pretty CLI banner."""
    width = 60
    print("\n" + "=" * width)
    print(f"{title:^{width}}")
    print("=" * width + "\n")
