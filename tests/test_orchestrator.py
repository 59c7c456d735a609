import asyncio

import pytest

from conftest import FakeSleep, RecordingRenderer
from hl7_common import ConfigurationError
from orchestrator import FleetOrchestrator, ramp_delays
from sim_config import Config


class FakeBed:
    def __init__(self, unit, number, host, port, renderer, alarms):
        self.unit = unit
        self.number = number
        self.alarms = alarms
        self.started = False
        self.closed = False

    async def start(self):
        self.started = True

    async def close(self):
        self.closed = True


def test_ramp_delays():
    assert ramp_delays(0) == [0.05]
    assert ramp_delays(4) == [0.05]
    assert ramp_delays(5) == [1.0, 0.05]
    assert ramp_delays(25) == [1.0, 300.0, 0.05]
    assert ramp_delays(50) == [1.0, 300.0, 0.05]


def test_thirty_bed_ramp_up(alarm_dict):
    async def scenario():
        sleep = FakeSleep()
        fleet = FleetOrchestrator(Config(bed_count=30), RecordingRenderer(), alarm_dict,
                                  bed_factory=FakeBed, sleep=sleep)
        await fleet.ramp_up()
        return fleet, sleep.delays

    fleet, delays = asyncio.run(scenario())
    assert [bed.number for bed in fleet.beds] == list(range(30))
    assert all(bed.started and bed.alarms is alarm_dict for bed in fleet.beds)
    assert delays.count(0.05) == 30
    assert delays.count(1.0) == 5
    assert delays.count(300.0) == 1
    # pauses come after beds 5, 10, 15, 20, 25
    one_second = [i for i, d in enumerate(delays) if d == 1.0]
    assert [delays[:i].count(0.05) for i in one_second] == [5, 10, 15, 20, 25]
    assert delays[delays.index(300.0) - 1] == 1.0


def test_alarms_disabled_builds_beds_without_alarm_feed():
    async def scenario():
        fleet = FleetOrchestrator(Config(bed_count=2, send_alarms=False), RecordingRenderer(),
                                  bed_factory=FakeBed, sleep=FakeSleep())
        await fleet.ramp_up()
        return fleet

    assert all(bed.alarms is None for bed in asyncio.run(scenario()).beds)


def test_alarms_enabled_needs_a_dictionary():
    with pytest.raises(ConfigurationError):
        FleetOrchestrator(Config(send_alarms=True), RecordingRenderer())


def test_stop_after_ramp_closes_every_bed():
    async def scenario():
        stop = asyncio.Event()
        fleet = FleetOrchestrator(Config(bed_count=7, send_alarms=False), RecordingRenderer(),
                                  bed_factory=FakeBed, sleep=FakeSleep())
        created = []
        make_bed = fleet.make_bed
        fleet.make_bed = lambda i: created.append(make_bed(i)) or created[-1]
        task = asyncio.ensure_future(fleet.run(stop))
        while len(created) < 7:
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.05)
        assert not task.done()
        stop.set()
        await task
        return created, fleet

    created, fleet = asyncio.run(scenario())
    assert all(bed.closed for bed in created)
    assert fleet.beds == []


def test_stop_during_ramp_closes_beds_already_created():
    async def scenario():
        stop = asyncio.Event()

        async def slow_sleep(delay):
            await asyncio.sleep(3600 if delay >= 1 else 0)

        fleet = FleetOrchestrator(Config(bed_count=30, send_alarms=False), RecordingRenderer(),
                                  bed_factory=FakeBed, sleep=slow_sleep)
        created = []
        make_bed = fleet.make_bed
        fleet.make_bed = lambda i: created.append(make_bed(i)) or created[-1]
        task = asyncio.ensure_future(fleet.run(stop))
        while len(created) < 6:
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, 5)
        return created

    created = asyncio.run(scenario())
    assert len(created) == 6  # held in the 1 s pause after bed 5
    assert all(bed.closed for bed in created)
