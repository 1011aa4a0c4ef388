from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping

from ...errors import ReadFailure

# BMP280 on the IIO bus: pressure is reported in kPa, temperature in milli-degC.
BMP280_PRESSURE_FILE = "in_pressure_input"
BMP280_TEMPERATURE_FILE = "in_temp_input"


def read_number(path: Path) -> float:
    try:
        raw = path.read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise ReadFailure(f"cannot read {path}: {exc.strerror or exc}") from exc
    try:
        return float(raw)
    except ValueError as exc:
        raise ReadFailure(f"{path}: not a number: {raw[:32]!r}") from exc


@dataclass(frozen=True)
class SysfsAttribute:
    """One IIO-style attribute file; value = (raw + offset) * scale."""

    path: Path
    scale: float = 1.0
    offset: float = 0.0

    def read(self) -> float:
        return (read_number(self.path) + self.offset) * self.scale


@dataclass
class SysfsReader:
    """Reads a scalar attribute, or one attribute per component of a structured value."""

    attribute: SysfsAttribute | None = None
    components: Mapping[str, SysfsAttribute] = field(default_factory=dict)
    as_int: bool = False

    def __post_init__(self) -> None:
        if (self.attribute is None) == (not self.components):
            raise ValueError("SysfsReader needs exactly one of 'attribute' or 'components'")

    def read(self) -> Any:
        if self.attribute is not None:
            value = self.attribute.read()
            return int(value) if self.as_int else value
        out: Dict[str, float] = {}
        for name, attribute in self.components.items():
            out[name] = attribute.read()
        return out
