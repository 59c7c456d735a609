#!/usr/bin/env python3
import argparse
import asyncio
import logging
import random
from dataclasses import asdict, dataclass
from datetime import datetime

from alarm_sim import AlarmDictionary, AlarmEventGenerator
from connection import Backoff, ConnectionManager
from hl7_common import ConfigurationError, ts_pair
from hl7_templates import TemplateRenderer
from sim_config import add_arguments, from_args

logger = logging.getLogger(__name__)

VITAL_WAVE = "VitalWave"
ALARM = "Alarm"

# how long the vital-wave retry loop waits before it will take a reconnect request
VITAL_WAVE_RATE_LIMIT = 60.0


@dataclass(frozen=True)
class MessageContext:
    Unit: str
    Bed: str
    PatientID: str
    PatientLast: str
    PatientFirst: str
    Datetime: str
    DatetimeSub1: str

    @classmethod
    def for_bed(cls, bed: "Bed", now: datetime | None = None) -> "MessageContext":
        now_ts, sub1_ts = ts_pair(now)
        return cls(Datetime=now_ts, DatetimeSub1=sub1_ts, **bed.patient_fields())

    def fields(self) -> dict:
        return asdict(self)


class PeriodicMessageScheduler:
    """Renders one `kind` message per tick and hands it to `submit`."""

    def __init__(self, kind: str, bed: "Bed", renderer, submit, interval: float = 1.0,
                 sleep=asyncio.sleep, clock=None):
        self.kind = kind
        self.bed = bed
        self.renderer = renderer
        self.submit = submit
        self.interval = interval
        self.sent = 0
        self._sleep = sleep
        self._clock = clock

    def tick(self):
        context = MessageContext.for_bed(self.bed)
        self.submit(self.kind, self.renderer.render(self.kind, context.fields()))
        self.sent += 1

    async def run(self, count: int = 0):
        clock = self._clock or asyncio.get_running_loop().time
        next_tick = clock()
        while True:
            self.tick()
            if count and self.sent >= count:
                break
            next_tick += self.interval
            delay = next_tick - clock()
            if delay < 0:
                # fell behind, restart the cadence from now
                next_tick, delay = clock(), 0
            await self._sleep(delay)


class Bed:
    """One bedside monitor: a vital-wave feed and, optionally, an alarm feed."""

    def __init__(self, unit: str, number: int | str, host: str, port: int, renderer,
                 alarms: AlarmDictionary | None = None, *,
                 interval: float = 1.0,
                 backoff: Backoff | None = None,
                 vital_rate_limit: float = VITAL_WAVE_RATE_LIMIT,
                 rng: random.Random | None = None,
                 connect_timeout: float = 10.0,
                 write_timeout: float = 10.0):
        self.unit = unit
        self.number = str(number)
        self.renderer = renderer
        self.vital_wave = ConnectionManager(f"{unit}_{self.number} {VITAL_WAVE}", host, port,
                                            rate_limit=vital_rate_limit, backoff=backoff,
                                            connect_timeout=connect_timeout, write_timeout=write_timeout)
        self.vitals = PeriodicMessageScheduler("vitals", self, renderer, self.vital_wave.submit, interval)
        self.waves = PeriodicMessageScheduler("waveform", self, renderer, self.vital_wave.submit, interval)

        self.alarm = None
        self.alarm_generator = None
        if alarms is not None:
            self.alarm = ConnectionManager(f"{unit}_{self.number} {ALARM}", host, port,
                                           backoff=backoff,
                                           connect_timeout=connect_timeout, write_timeout=write_timeout)
            self.alarm_generator = AlarmEventGenerator(self, alarms, renderer, self.alarm.submit, rng=rng)
        self._tasks: list[asyncio.Task] = []

    def __repr__(self):
        return f"<Bed {self.unit}_{self.number}>"

    def patient_fields(self) -> dict:
        return {
            "Unit": self.unit,
            "Bed": self.number,
            "PatientID": self.number,
            "PatientLast": "L" + self.number,
            "PatientFirst": "F" + self.number,
        }

    @property
    def feeds(self) -> list[ConnectionManager]:
        return [f for f in (self.vital_wave, self.alarm) if f is not None]

    async def _when_connected(self, feed: ConnectionManager, run):
        await feed.wait_connected()
        await run()

    def _spawn(self, feed: ConnectionManager, run, name: str):
        loop = asyncio.get_running_loop()
        self._tasks.append(loop.create_task(self._when_connected(feed, run), name=f"{self!r} {name}"))

    async def start_vital_wave(self):
        self._spawn(self.vital_wave, self.vitals.run, "vitals")
        self._spawn(self.vital_wave, self.waves.run, "waveform")
        await self.vital_wave.start()

    async def start_alarm(self):
        self._spawn(self.alarm, self.alarm_generator.run, "alarms")
        await self.alarm.start()

    async def start(self):
        await self.start_vital_wave()
        if self.alarm is not None:
            await self.start_alarm()

    async def close(self):
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        for feed in self.feeds:
            await feed.close()


async def run_bed(config, renderer, alarms, number, interval):
    bed = Bed(config.unit, number, config.ip, config.port, renderer, alarms, interval=interval)
    await bed.start()
    try:
        await asyncio.Event().wait()
    finally:
        await bed.close()


def main():
    p = argparse.ArgumentParser(description="Single bedside monitor (vital-wave and alarm feeds)")
    add_arguments(p)
    p.add_argument("--bed", default="0")
    p.add_argument("--interval", type=float, default=1.0, help="Seconds between vitals/waveform messages")
    args = p.parse_args()

    try:
        config = from_args(args)
        renderer = TemplateRenderer.load(config.template_dir)
        alarms = AlarmDictionary.load(config.alarm_dict) if config.send_alarms else None
    except ConfigurationError as exc:
        p.error(str(exc))

    logging.basicConfig(level=config.log_level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    logger.info(config.describe())
    try:
        asyncio.run(run_bed(config, renderer, alarms, args.bed, max(0.05, args.interval)))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
