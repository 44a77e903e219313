"""
Allocator tests: pass-through contract, leak tracking, reporting, threads.
"""

import io
import os
import sys
import threading

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest  # noqa: E402

from ikedh.common import allocator as allocator_mod  # noqa: E402
from ikedh.common import config as config_mod  # noqa: E402
from ikedh.common.allocator import (  # noqa: E402
    AllocationFailure,
    Allocator,
    LeakDetective,
    LeakRecord,
    get_allocator,
    set_allocator,
)
from ikedh.common.config import set_settings  # noqa: E402
from ikedh.common.utils import format_leak, print_leak_report  # noqa: E402


def test_allocate_zero_filled():
    for alloc in (Allocator(), LeakDetective()):
        buf = alloc.allocate(32)
        assert isinstance(buf, bytearray)
        assert buf == bytearray(32)
        assert len(alloc.allocate_as_chunk(7)) == 7


def test_free_wipes_buffer():
    for alloc in (Allocator(), LeakDetective()):
        buf = alloc.clone_bytes(b"secret material")
        alloc.free(buf)
        assert buf == bytearray(len(b"secret material"))
        alloc.free(None)


def test_invalid_size():
    with pytest.raises(AllocationFailure):
        Allocator().allocate(-1)
    with pytest.raises(AllocationFailure):
        LeakDetective().allocate(-1)


def test_allocation_failure_is_translated():
    class Exhausted(Allocator):
        def _new_buffer(self, size):
            raise AllocationFailure("out of memory")

    alloc = Exhausted()
    with pytest.raises(AllocationFailure):
        alloc.allocate(8)
    with pytest.raises(MemoryError):
        alloc.clone_bytes(b"abc")


def test_reallocate_copies_smaller_size():
    alloc = LeakDetective()
    buf = alloc.clone_bytes(b"abcdef")

    grown = alloc.reallocate(buf, 8)
    assert grown == bytearray(b"abcdef\x00\x00")
    assert buf == bytearray(6)  # old buffer wiped
    assert alloc.outstanding() == 1

    shrunk = alloc.reallocate(grown, 3)
    assert shrunk == bytearray(b"abc")
    assert alloc.outstanding() == 1

    assert alloc.reallocate(None, 4) is None
    alloc.free(shrunk)
    assert alloc.outstanding() == 0


def test_clone_bytes():
    alloc = LeakDetective()
    data = b"\x01\x02\x03"
    clone = alloc.clone_bytes(data)
    assert clone == bytearray(data)
    clone[0] = 0xFF
    assert data == b"\x01\x02\x03"
    assert alloc.clone_bytes(None) is None
    alloc.free(clone)


def test_leak_detective_tracks_outstanding():
    alloc = LeakDetective()
    a = alloc.allocate(4)
    b = alloc.allocate(8)
    assert alloc.outstanding() == 2
    alloc.free(a)
    assert alloc.outstanding() == 1
    alloc.free(b)
    assert alloc.outstanding() == 0
    assert alloc.report_leaks() == []


def test_pass_through_reports_nothing():
    alloc = Allocator()
    alloc.allocate(4)
    assert alloc.outstanding() == 0
    assert alloc.report_leaks() == []


def test_free_foreign_buffer_rejected():
    alloc = LeakDetective()
    with pytest.raises(AllocationFailure):
        alloc.free(bytearray(4))

    buf = alloc.allocate(4)
    alloc.free(buf)
    with pytest.raises(AllocationFailure):
        alloc.free(buf)  # double free


def test_report_aggregates_by_call_site():
    alloc = LeakDetective()
    kept = [alloc.allocate(16) for _ in range(3)]
    single = alloc.allocate(5)

    report = alloc.report_leaks()
    assert len(report) == 2

    newest, loop = report
    assert newest.count == 1
    assert newest.size == 5
    assert loop.count == 3
    assert loop.size == 48
    assert loop.line != newest.line
    assert os.path.basename(loop.filename) == "test_allocator.py"

    for buf in kept + [single]:
        alloc.free(buf)
    assert alloc.report_leaks() == []


def test_call_site_skips_allocator_frames():
    alloc = LeakDetective()
    buf = alloc.clone_bytes(b"xyz")  # clone_bytes -> allocate -> _track
    (record,) = alloc.report_leaks()
    assert os.path.basename(record.filename) == "test_allocator.py"
    alloc.free(buf)


def test_print_leak_report():
    out = io.StringIO()
    records = [
        LeakRecord(count=3, filename="dh.py", line=120, size=48),
        LeakRecord(count=1, filename="dh.py", line=98, size=96),
    ]
    assert print_leak_report(records, stream=out) == 4
    lines = out.getvalue().splitlines()
    assert lines == [
        'LEAK: "3 * File dh.py, Line 120"',
        'LEAK: "dh.py, Line 98"',
    ]
    assert format_leak(records[1]) == lines[1]


def test_concurrent_allocations():
    alloc = LeakDetective()
    errors = []

    def worker():
        try:
            for _ in range(200):
                buf = alloc.allocate(32)
                buf[0] = 1
                alloc.free(buf)
        except Exception as e:  # pragma: no cover - reported below
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert not errors
    assert alloc.outstanding() == 0


def test_default_allocator_from_config(monkeypatch):
    monkeypatch.setattr(allocator_mod, "_default_allocator", None)
    monkeypatch.setattr(config_mod, "_settings", None)
    monkeypatch.setenv("IKEDH_LEAK_DETECTIVE", "true")
    assert isinstance(get_allocator(), LeakDetective)
    assert get_allocator() is get_allocator()

    custom = Allocator()
    set_allocator(custom)
    assert get_allocator() is custom

    set_allocator(None)
    set_settings(None)
    monkeypatch.setenv("IKEDH_LEAK_DETECTIVE", "false")
    default = get_allocator()
    assert type(default) is Allocator
