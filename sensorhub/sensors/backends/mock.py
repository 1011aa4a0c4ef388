from __future__ import annotations

import hashlib
import math
import random
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Sequence

STANDARD_GRAVITY = 9.80665

# Demo devices are scattered within ~40 km of this point.
HOME_LAT = 43.6150
HOME_LON = -116.2023
SCATTER_DEG = 0.35


def _device_index(device_id: str) -> int:
    digits = re.search(r"(\d+)$", device_id)
    return max(1, int(digits.group(1))) if digits else 1


def _seeded_rng(*parts: str) -> random.Random:
    seed_bytes = hashlib.sha256(":".join(parts).encode("utf-8")).digest()[:8]
    return random.Random(int.from_bytes(seed_bytes, "big", signed=False))


def location_for(device_id: str) -> tuple[float, float]:
    """Stable per-device position near HOME_LAT/HOME_LON."""

    rng = _seeded_rng(device_id, "geo")
    dlat = rng.uniform(-SCATTER_DEG, SCATTER_DEG)
    # Keep the east-west spread in distance roughly equal to north-south.
    dlon = rng.uniform(-SCATTER_DEG, SCATTER_DEG) / math.cos(math.radians(HOME_LAT))
    return round(HOME_LAT + dlat, 6), round(HOME_LON + dlon, 6)


@dataclass
class MockReader:
    """Deterministic simulated readings for local runs and demos.

    Known channel ids get a plausible signal (slow oscillation plus noise, with
    an occasional burst so thresholds trip); anything else gets a generic
    sine, structured when `components` is given.
    """

    device_id: str
    channel_id: str
    components: Sequence[str] = ()
    clock: Callable[[], float] = time.time
    _rng: random.Random = field(init=False, repr=False)
    _idx: int = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._rng = _seeded_rng(self.device_id, self.channel_id)
        self._idx = _device_index(self.device_id)

    def read(self) -> Any:
        t = self.clock()
        simulate = getattr(self, f"_read_{self.channel_id}", None)
        if simulate is not None:
            return simulate(t)
        if self.components:
            return {
                name: round(math.sin(t / 60.0 + i) + self._rng.uniform(-0.1, 0.1), 3)
                for i, name in enumerate(self.components)
            }
        return round(50.0 + 10.0 * math.sin(t / 60.0 + self._idx) + self._rng.uniform(-1.0, 1.0), 2)

    def _read_light(self, t: float) -> int:
        # Raw ambient light level; a day/night swing with passing shadows.
        level = 600.0 + 400.0 * math.sin(t / 600.0 + self._idx) + self._rng.uniform(-20.0, 20.0)
        if int(t) % 180 < 15:
            level -= 350.0
        return max(0, int(level))

    def _read_pressure(self, t: float) -> float:
        kpa = 101.3 + 1.5 * math.sin(t / 900.0 + self._idx) + self._rng.uniform(-0.05, 0.05)
        return round(kpa, 3)

    def _read_temperature(self, t: float) -> float:
        temperature_c = 10.0 + 12.0 * math.sin(t / 300.0) + self._rng.uniform(-0.4, 0.4)
        return round(temperature_c, 2)

    def _read_acceleration(self, t: float) -> Dict[str, float]:
        x = self._rng.uniform(-0.2, 0.2)
        y = self._rng.uniform(-0.2, 0.2)
        z = STANDARD_GRAVITY + self._rng.uniform(-0.2, 0.2)
        # Brief knock every few minutes.
        if int(t) % 240 < 2:
            x += 6.0
        return {"x": round(x, 4), "y": round(y, 4), "z": round(z, 4)}

    def _read_gyro(self, t: float) -> Dict[str, float]:
        spin = 2.0 if int(t) % 300 < 3 else 0.0
        return {
            "x": round(self._rng.uniform(-0.05, 0.05), 4),
            "y": round(self._rng.uniform(-0.05, 0.05), 4),
            "z": round(spin + self._rng.uniform(-0.05, 0.05), 4),
        }

    def _read_position(self, t: float) -> Dict[str, float]:
        lat, lon = location_for(self.device_id)
        # A slow drift of a few metres.
        drift = 0.00003 * math.sin(t / 120.0)
        return {
            "lat": round(lat + drift, 6),
            "lon": round(lon + drift, 6),
            "alt": round(824.0 + self._rng.uniform(-1.5, 1.5), 1),
            "h_accuracy": round(self._rng.uniform(2.0, 6.0), 1),
            "v_accuracy": round(self._rng.uniform(3.0, 9.0), 1),
        }
