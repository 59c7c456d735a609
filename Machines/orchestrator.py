#!/usr/bin/env python3
"""
Monitor fleet orchestrator
--------------------------
Brings up BED_COUNT simulated bedside monitors against one hub, staggering
bed creation so the hub does not see every connection at once, then keeps
them all sending until SIGINT/SIGTERM, when every connection is closed.

Usage examples:
  # 30 beds against a hub on 10.0.0.5:9899, alarms on
  IP=10.0.0.5 BED_COUNT=30 python orchestrator.py

  # Same from flags, no alarm feed
  python orchestrator.py --mllp-host 10.0.0.5 --beds 30 --send-alarms false

Pacing: 50 ms after every bed, +1 s after every 5th, +5 min after every 25th.
"""

import argparse
import asyncio
import contextlib
import logging
import signal

from alarm_sim import AlarmDictionary
from hl7_common import ConfigurationError
from hl7_templates import TemplateRenderer
from monitor_sim import Bed
from sim_config import Config, add_arguments, from_args

logger = logging.getLogger(__name__)

BED_GAP = 0.05
BATCH_EVERY, BATCH_PAUSE = 5, 1.0
WAVE_EVERY, WAVE_PAUSE = 25, 300.0


def ramp_delays(index: int) -> list[float]:
    """Pauses taken after creating bed `index`."""
    delays = []
    if index and index % BATCH_EVERY == 0:
        delays.append(BATCH_PAUSE)
    if index and index % WAVE_EVERY == 0:
        delays.append(WAVE_PAUSE)
    delays.append(BED_GAP)
    return delays


class FleetOrchestrator:
    def __init__(self, config: Config, renderer: TemplateRenderer, alarms: AlarmDictionary | None = None,
                 bed_factory=Bed, sleep=asyncio.sleep):
        if config.send_alarms and alarms is None:
            raise ConfigurationError("alarms are enabled but no alarm dictionary was loaded")
        self.config = config
        self.renderer = renderer
        self.alarms = alarms if config.send_alarms else None
        self.bed_factory = bed_factory
        self.beds: list = []
        self._sleep = sleep

    def make_bed(self, index: int):
        return self.bed_factory(self.config.unit, index, self.config.ip, self.config.port,
                                self.renderer, self.alarms)

    async def ramp_up(self):
        for i in range(self.config.bed_count):
            bed = self.make_bed(i)
            self.beds.append(bed)
            await bed.start()
            for delay in ramp_delays(i):
                await self._sleep(delay)
        logger.info("All configured beds are now sending!")

    async def close(self):
        beds, self.beds = self.beds, []
        await asyncio.gather(*(bed.close() for bed in beds), return_exceptions=True)
        logger.info("Closed %d beds", len(beds))

    async def run(self, stop: asyncio.Event):
        """Ramp up, then hold until `stop` is set. Always closes every bed."""
        ramp = asyncio.ensure_future(self.ramp_up())
        stopped = asyncio.ensure_future(stop.wait())
        try:
            done, _ = await asyncio.wait({ramp, stopped}, return_when=asyncio.FIRST_COMPLETED)
            if ramp in done:
                ramp.result()
                await stopped
            else:
                ramp.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await ramp
        finally:
            for task in (ramp, stopped):
                task.cancel()
            await self.close()


async def serve(config: Config, renderer: TemplateRenderer, alarms: AlarmDictionary | None):
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)
    await FleetOrchestrator(config, renderer, alarms).run(stop)


def run():
    ap = argparse.ArgumentParser(description="Bedside monitor fleet (MLLP vital-wave and alarm feeds)")
    add_arguments(ap)
    args = ap.parse_args()

    try:
        config = from_args(args)
        renderer = TemplateRenderer.load(config.template_dir)
        alarms = AlarmDictionary.load(config.alarm_dict) if config.send_alarms else None
    except ConfigurationError as exc:
        ap.error(str(exc))

    logging.basicConfig(level=config.log_level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    logger.info(config.describe())
    try:
        asyncio.run(serve(config, renderer, alarms))
    except KeyboardInterrupt:
        pass
    logger.info("Stopped")


if __name__ == "__main__":
    run()
