import asyncio
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1] / "Machines"))
from alarm_sim import AlarmDictionary
from hl7_templates import TemplateRenderer
from sim_config import Config

FIVE_ALARMS = [
    ("HR High", "196648"),
    ("HR Low", "196652"),
    ("SpO2 Low", "196824"),
    ("Apnea", "196660"),
    ("Asystole", "196608"),
]


class FakeSleep:
    """Records requested delays and returns at once (after yielding to the loop)."""

    def __init__(self, clock=None):
        self.delays = []
        self.clock = clock

    async def __call__(self, delay):
        self.delays.append(delay)
        if self.clock is not None:
            self.clock.now += delay
        await asyncio.sleep(0)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class FakeWriter:
    def __init__(self, fail=False):
        self.data = bytearray()
        self.closed = False
        self.fail = fail

    def is_closing(self):
        return self.closed

    def close(self):
        self.closed = True

    def write(self, data):
        self.data += data

    async def drain(self):
        if self.fail:
            raise ConnectionResetError("Connection lost")

    async def wait_closed(self):
        pass


class FakeReader:
    def __init__(self):
        self._eof = asyncio.Event()

    async def read(self, n):
        await self._eof.wait()
        return b""

    def feed_eof(self):
        self._eof.set()


class RecordingRenderer:
    def __init__(self):
        self.rendered = []

    def render(self, kind, context):
        self.rendered.append((kind, dict(context)))
        return f"{kind}|{context.get('Bed', '')}"


async def wait_until(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def config():
    return Config()


@pytest.fixture
def renderer(config):
    return TemplateRenderer.load(config.template_dir)


@pytest.fixture
def alarm_dict():
    return AlarmDictionary(FIVE_ALARMS)
