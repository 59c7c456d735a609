import asyncio
import re
from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeWriter
from hl7_common import CR, EB, SB, WriteError, frame, seg, ts, ts_pair, write_frame

TS_RE = re.compile(r"^\d{14}\.\d{4}[+-]\d{4}$")


def test_frame_markers():
    data = frame("MSH|^~\\&|X\rPID|||1")
    assert data[:1] == b"\x0b" == SB
    assert data[-2:] == b"\x1c\x0d" == EB + CR
    assert data[1:-2] == b"MSH|^~\\&|X\rPID|||1"


def test_ts_format_with_offset():
    dt = datetime(2024, 3, 9, 7, 5, 4, 123456, tzinfo=timezone(timedelta(hours=-5)))
    assert ts(dt) == "20240309070504.1234-0500"


def test_ts_default_is_local_with_offset():
    assert TS_RE.match(ts())


def test_ts_pair_is_one_second_apart():
    dt = datetime(2024, 1, 1, 0, 0, 0, 500000, tzinfo=timezone.utc)
    now, sub1 = ts_pair(dt)
    assert now == "20240101000000.5000+0000"
    assert sub1 == "20231231235959.5000+0000"


def test_seg_blanks_missing_fields():
    assert seg("MSA", "AA", None, 3) == "MSA|AA||3\r"


def test_write_frame_writes_one_frame():
    writer = FakeWriter()
    asyncio.run(write_frame(writer, "MSH|1"))
    assert bytes(writer.data) == b"\x0bMSH|1\x1c\x0d"


def test_write_frame_reports_lost_connection():
    with pytest.raises(WriteError):
        asyncio.run(write_frame(FakeWriter(fail=True), "MSH|1"))


def test_write_frame_refuses_closed_stream():
    writer = FakeWriter()
    writer.close()
    with pytest.raises(WriteError):
        asyncio.run(write_frame(writer, "MSH|1"))
    assert writer.data == b""
