#!/usr/bin/env python3
import asyncio
import csv
import logging
import random
from dataclasses import dataclass
from pathlib import Path
from typing import NamedTuple

from hl7_common import ConfigurationError

logger = logging.getLogger(__name__)

# severity level -> priority token
PRIORITY_TOKENS = {
    4: "H~PH~SP",   # crisis
    3: "H~PM~SP",   # warning
    2: "H~PL~SP",   # advisory
    1: "H~PM~ST",   # system
}
LEVELS = tuple(sorted(PRIORITY_TOKENS))


def priority_token(level: int) -> str:
    return PRIORITY_TOKENS.get(level, PRIORITY_TOKENS[1])


class AlarmDefinition(NamedTuple):
    name: str
    code: str


class AlarmDictionary:
    """Read-only, non-empty list of (name, code) pairs."""

    def __init__(self, alarms):
        self.alarms = tuple(AlarmDefinition(*a) for a in alarms)
        if not self.alarms:
            raise ConfigurationError("NO ALARMS FOUND IN ALARM DICTIONARY")

    def __len__(self):
        return len(self.alarms)

    def __iter__(self):
        return iter(self.alarms)

    def __getitem__(self, index) -> AlarmDefinition:
        return self.alarms[index]

    @classmethod
    def load(cls, path: Path) -> "AlarmDictionary":
        try:
            with open(path, newline="", encoding="utf-8") as f:
                rows = list(csv.reader(f))
        except (OSError, csv.Error) as exc:
            raise ConfigurationError(f"Error reading the alarm CSV file {path}: {exc}") from exc
        try:
            return cls((row[0], row[1]) for row in rows if len(row) >= 2)
        except ConfigurationError as exc:
            raise ConfigurationError(f"{exc}: {path}") from exc


@dataclass(frozen=True)
class AlarmRecord:
    name: str
    code: str
    level: int

    @property
    def priority(self) -> str:
        return priority_token(self.level)

    def fields(self, start: bool) -> dict:
        return {
            "AlarmCode": self.code,
            "AlarmText": self.name,
            "AlarmLevel": self.priority,
            "Start": "start" if start else "end",
            "Active": "active" if start else "inactive",
        }


class AlarmEventGenerator:
    """
    Idle for 1-10 min, then forever: Start, hold 1-60 s, End, cool down 1-30 min.

    Each record is rendered with the bed's patient fields and handed to `submit`
    (the alarm feed's outbox). A failed write is the feed's concern; the cycle
    carries on, so an End always follows its Start.
    """

    def __init__(self, bed, alarms: AlarmDictionary, renderer, submit, *,
                 rng: random.Random | None = None,
                 idle=(60, 600, 60),
                 hold=(1, 60, 1),
                 cooldown=(60, 1800, 60),
                 sleep=asyncio.sleep):
        self.bed = bed
        self.alarms = alarms
        self.renderer = renderer
        self.submit = submit
        self.rnd = rng or random.Random()
        self.idle = idle
        self.hold = hold
        self.cooldown = cooldown
        self._sleep = sleep
        self.sent = 0

    def _pick_delay(self, bounds) -> float:
        lo, hi, step = bounds
        return self.rnd.randrange(lo, hi + step, step)

    def pick(self) -> AlarmRecord:
        alarm = self.rnd.choice(self.alarms)
        return AlarmRecord(alarm.name, alarm.code, self.rnd.choice(LEVELS))

    def emit(self, record: AlarmRecord, start: bool):
        context = dict(self.bed.patient_fields(), **record.fields(start))
        self.submit("alarm", self.renderer.render("alarm", context))
        self.sent += 1

    async def cycle(self, record: AlarmRecord | None = None) -> AlarmRecord:
        record = record or self.pick()
        self.emit(record, start=True)
        logger.info("Sent alarm %s for %s _ %s", record.name, self.bed.unit, self.bed.number)
        await self._sleep(self._pick_delay(self.hold))
        self.emit(record, start=False)
        return record

    async def run(self, cycles: int | None = None):
        await self._sleep(self._pick_delay(self.idle))
        done = 0
        while cycles is None or done < cycles:
            await self.cycle()
            done += 1
            await self._sleep(self._pick_delay(self.cooldown))
