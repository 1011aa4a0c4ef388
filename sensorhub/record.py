from __future__ import annotations

import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping

from .errors import EncodeFailure, OverflowFailure

DEFAULT_MAX_ENTRIES = 256


@dataclass(frozen=True)
class RecordEntry:
    path: str
    value: int | float
    timestamp_ms: int


Encoder = Callable[["TelemetryRecord", float, Any], None]


def timestamp_ms(timestamp: float) -> int:
    return int(timestamp * 1000.0)


class TelemetryRecord:
    """Time-series record of (path, value, timestamp) entries pushed as one unit."""

    def __init__(self, *, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        self.max_entries = max(1, int(max_entries))
        self.message_id = uuid.uuid4().hex
        self._entries: List[RecordEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    def is_empty(self) -> bool:
        return not self._entries

    @property
    def entries(self) -> tuple[RecordEntry, ...]:
        return tuple(self._entries)

    def add(self, entries: Iterable[RecordEntry]) -> None:
        """Append entries atomically: either all of them fit or none are added."""

        batch = list(entries)
        if len(self._entries) + len(batch) > self.max_entries:
            raise OverflowFailure(
                f"record full ({len(self._entries)}/{self.max_entries} entries, {len(batch)} requested)"
            )
        self._entries.extend(batch)

    def latest(self) -> Dict[str, tuple[int | float, int]]:
        """Return path -> (value, timestamp_ms) keeping the newest entry per path."""

        out: Dict[str, tuple[int | float, int]] = {}
        for entry in self._entries:
            current = out.get(entry.path)
            if current is None or entry.timestamp_ms >= current[1]:
                out[entry.path] = (entry.value, entry.timestamp_ms)
        return out

    def to_payload(self, *, device_id: str) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "device_id": device_id,
            "ts": datetime.now(timezone.utc).isoformat(),
            "points": [
                {"path": e.path, "value": e.value, "ts": e.timestamp_ms}
                for e in self._entries
            ],
        }


def _coerce_number(value: Any, *, what: str, as_int: bool) -> int | float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise EncodeFailure(f"{what}: expected a number, got {type(value).__name__}")
    if not math.isfinite(float(value)):
        raise EncodeFailure(f"{what}: value {value!r} is not finite")
    if as_int:
        return int(value)
    return float(value)


def scalar_encoder(path: str, *, as_int: bool = False) -> Encoder:
    def _encode(record: TelemetryRecord, timestamp: float, value: Any) -> None:
        number = _coerce_number(value, what=path, as_int=as_int)
        record.add([RecordEntry(path=path, value=number, timestamp_ms=timestamp_ms(timestamp))])

    return _encode


def vector_encoder(component_paths: Mapping[str, str]) -> Encoder:
    """Encode a structured value as one entry per component.

    component_paths maps a component name (e.g. "x") to its full record path.
    """

    paths = dict(component_paths)
    if not paths:
        raise ValueError("vector encoder requires at least one component path")

    def _encode(record: TelemetryRecord, timestamp: float, value: Any) -> None:
        if not isinstance(value, Mapping):
            raise EncodeFailure(f"expected a structured value, got {type(value).__name__}")
        ms = timestamp_ms(timestamp)
        batch: List[RecordEntry] = []
        for component, path in paths.items():
            if component not in value:
                raise EncodeFailure(f"'{component}' missing from value for {path}")
            number = _coerce_number(value[component], what=path, as_int=False)
            batch.append(RecordEntry(path=path, value=number, timestamp_ms=ms))
        record.add(batch)

    return _encode
