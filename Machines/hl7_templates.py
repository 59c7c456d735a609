#!/usr/bin/env python3
from pathlib import Path
from string import Template

from hl7_common import SEG_SEP, ConfigurationError

PATIENT_FIELDS = ("Unit", "Bed", "PatientID", "PatientLast", "PatientFirst")

TEMPLATE_FIELDS = {
    "vitals": PATIENT_FIELDS + ("Datetime", "DatetimeSub1"),
    "waveform": PATIENT_FIELDS + ("Datetime", "DatetimeSub1"),
    "alarm": PATIENT_FIELDS + ("AlarmCode", "AlarmText", "AlarmLevel", "Start", "Active"),
}


def _compile(kind: str, path: Path) -> Template:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"Error reading the {kind} template {path}: {exc}") from exc

    segments = [line.rstrip("\r") for line in text.splitlines() if line.strip()]
    if not segments:
        raise ConfigurationError(f"The {kind} template {path} is empty")
    template = Template(SEG_SEP.join(segments))

    if not template.is_valid():
        raise ConfigurationError(f"Error making {kind} template {path}: bad placeholder")
    unknown = set(template.get_identifiers()) - set(TEMPLATE_FIELDS[kind])
    if unknown:
        raise ConfigurationError(f"Error making {kind} template {path}: unknown fields {sorted(unknown)}")
    return template


class TemplateRenderer:
    """Turns a context record into an HL7 message body."""

    def __init__(self, templates: dict[str, Template]):
        self.templates = dict(templates)

    @classmethod
    def load(cls, template_dir: Path) -> "TemplateRenderer":
        template_dir = Path(template_dir)
        return cls({kind: _compile(kind, template_dir / f"{kind}.hl7") for kind in TEMPLATE_FIELDS})

    def render(self, kind: str, context: dict) -> str:
        return self.templates[kind].substitute(context)
