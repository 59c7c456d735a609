#!/usr/bin/env python3
"""
Settings for the monitor fleet.

Values come from the environment (optionally a .env file), are overridden by
command line flags, and fall back to the baseline below when unset.
"""

import argparse
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path

from dotenv import load_dotenv

from hl7_common import ConfigurationError

HERE = Path(__file__).resolve().parent

_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}


@dataclass(frozen=True)
class Config:
    ip: str = "127.0.0.1"
    port: int = 9899
    bed_count: int = 20
    send_alarms: bool = True
    unit: str = "LABMR"
    template_dir: Path = HERE / "templates"
    alarm_dict: Path = HERE / "alarms" / "AlarmDict.csv"
    log_level: str = "INFO"

    def describe(self) -> str:
        return (f"Using the following settings: {self.ip}:{self.port}, {self.bed_count} beds, "
                f"SendAlarms = {str(self.send_alarms).lower()}")


def parse_bool(value: str) -> bool:
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"invalid boolean {value!r}")


def parse_port(value) -> int:
    port = int(value)
    if not 0 < port < 65536:
        raise ValueError(f"port {port} out of range")
    return port


def parse_count(value) -> int:
    count = int(value)
    if count < 0:
        raise ValueError(f"bed count {count} is negative")
    return count


def parse_level(value: str) -> str:
    level = value.upper()
    if not isinstance(logging.getLevelName(level), int):
        raise ValueError(f"unknown log level {value!r}")
    return level


# env var -> (field, parser)
ENV_VARS = {
    "IP": ("ip", str),
    "PORT": ("port", parse_port),
    "BED_COUNT": ("bed_count", parse_count),
    "SEND_ALARMS": ("send_alarms", parse_bool),
    "UNIT": ("unit", str),
    "TEMPLATE_DIR": ("template_dir", Path),
    "ALARM_DICT": ("alarm_dict", Path),
    "LOG_LEVEL": ("log_level", parse_level),
}


def load_config(environ=None, base: Config | None = None) -> Config:
    environ = os.environ if environ is None else environ
    config = base or Config()
    changes = {}
    for var, (field, parser) in ENV_VARS.items():
        raw = environ.get(var, "")
        if raw == "":
            continue
        try:
            changes[field] = parser(raw)
        except ValueError as exc:
            raise ConfigurationError(f"Something broke trying to set {var}: {exc}") from exc
    return replace(config, **changes)


def add_arguments(ap: argparse.ArgumentParser):
    ap.add_argument("--mllp-host", dest="ip", help="Hub address (env IP)")
    ap.add_argument("--mllp-port", dest="port", help="Hub port (env PORT)")
    ap.add_argument("--beds", dest="bed_count", help="Number of beds (env BED_COUNT)")
    ap.add_argument("--send-alarms", dest="send_alarms", help="true/false (env SEND_ALARMS)")
    ap.add_argument("--unit", help="Unit label (env UNIT)")
    ap.add_argument("--template-dir", help="Directory holding the message templates (env TEMPLATE_DIR)")
    ap.add_argument("--alarm-dict", help="Alarm dictionary CSV (env ALARM_DICT)")
    ap.add_argument("--log-level", help="Logging level (env LOG_LEVEL)")


def from_args(args: argparse.Namespace, environ=None) -> Config:
    """Environment first, then any flags given on the command line."""
    if environ is None:
        load_dotenv()
    config = load_config(environ)
    overrides = {}
    for field, parser in ENV_VARS.values():
        raw = getattr(args, field, None)
        if raw is None:
            continue
        try:
            overrides[field] = parser(raw)
        except ValueError as exc:
            raise ConfigurationError(f"Something broke trying to set --{field.replace('_', '-')}: {exc}") from exc
    return replace(config, **overrides)
