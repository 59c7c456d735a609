#!/usr/bin/env python3
import asyncio
from datetime import datetime, timedelta

FIELD_SEP = "|"
SEG_SEP = "\r"

# MLLP framing characters
SB = b"\x0b"       # <VT>  start block
EB = b"\x1c"       # <FS>  end block
CR = b"\x0d"       # <CR>  terminator


class SimulatorError(Exception):
    pass


class ConfigurationError(SimulatorError):
    """Bad template, environment value or alarm dictionary. Fatal at startup."""


class DialError(SimulatorError):
    pass


class WriteError(SimulatorError):
    pass


def ts(dt: datetime | None = None) -> str:
    """HL7 timestamp YYYYMMDDHHMMSS.ffff+HHMM in local time."""
    if dt is None:
        dt = datetime.now().astimezone()
    elif dt.tzinfo is None:
        dt = dt.astimezone()
    return f"{dt:%Y%m%d%H%M%S}.{dt.microsecond // 100:04d}{dt:%z}"


def ts_pair(dt: datetime | None = None) -> tuple[str, str]:
    """Timestamp for `dt` and for one second earlier."""
    if dt is None:
        dt = datetime.now().astimezone()
    return ts(dt), ts(dt - timedelta(seconds=1))


def seg(name: str, *fields) -> str:
    return name + FIELD_SEP + FIELD_SEP.join("" if f is None else str(f) for f in fields) + SEG_SEP


def frame(hl7_message: str) -> bytes:
    return SB + hl7_message.encode("utf-8") + EB + CR


async def write_frame(writer: asyncio.StreamWriter, hl7_message: str, timeout: float | None = None):
    """Write one framed message and wait for the transport to take it."""
    if writer.is_closing():
        raise WriteError("stream is closed")
    try:
        writer.write(frame(hl7_message))
        await asyncio.wait_for(writer.drain(), timeout)
    except (OSError, asyncio.TimeoutError) as exc:
        raise WriteError(str(exc) or exc.__class__.__name__) from exc
