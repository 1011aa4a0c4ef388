from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterator, List, Mapping, Tuple

from .change_detector import ThresholdCheck, should_record
from .errors import ConfigurationError, ReadFailure
from .record import Encoder, TelemetryRecord


class ChannelKind(str, Enum):
    SCALAR = "scalar"
    VECTOR = "vector"


class DeliveryMode(str, Enum):
    AGGREGATE = "aggregate"
    STREAM = "stream"


@dataclass(frozen=True)
class Sample:
    value: Any
    timestamp: float


UNSET = Sample(value=None, timestamp=0.0)


def freeze_value(value: Any) -> Any:
    """Detached, read-only copy of a reading."""

    if isinstance(value, Mapping):
        return MappingProxyType(dict(value))
    return value


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


@dataclass(eq=False)
class Channel:
    """One monitored quantity with its read, threshold and encode behaviour."""

    id: str
    kind: ChannelKind
    reader: Callable[[], Any]
    threshold: ThresholdCheck
    encoder: Encoder
    delivery: DeliveryMode = DeliveryMode.AGGREGATE
    components: Tuple[str, ...] = ()
    last_read: Sample = field(default=UNSET)
    last_recorded: Sample = field(default=UNSET)

    def read(self) -> Any:
        value = self.reader()
        if self.kind is ChannelKind.SCALAR:
            if not _is_number(value):
                raise ReadFailure(f"{self.id}: expected a numeric reading, got {type(value).__name__}")
        elif not isinstance(value, Mapping):
            raise ReadFailure(f"{self.id}: expected a structured reading, got {type(value).__name__}")
        else:
            bad = [name for name in self.components if not _is_number(value.get(name))]
            if bad:
                raise ReadFailure(f"{self.id}: missing or non-numeric components: {', '.join(bad)}")
        return value

    def exceeds_threshold(self, recorded: Any, candidate: Any) -> bool:
        return self.threshold(recorded, candidate)

    def encode(self, record: TelemetryRecord, timestamp: float, value: Any) -> None:
        self.encoder(record, timestamp, value)

    @property
    def never_recorded(self) -> bool:
        return self.last_recorded.timestamp == 0

    def wants_record(self, candidate: Any) -> bool:
        return should_record(
            recorded_timestamp=self.last_recorded.timestamp,
            recorded=self.last_recorded.value,
            candidate=candidate,
            check=self.exceeds_threshold,
        )

    def mark_read(self, value: Any, timestamp: float) -> None:
        self.last_read = Sample(value=freeze_value(value), timestamp=timestamp)

    def mark_recorded(self, value: Any, timestamp: float) -> None:
        self.last_recorded = Sample(value=freeze_value(value), timestamp=timestamp)

    def age_since_recorded(self, now: float) -> float:
        return now - self.last_recorded.timestamp


class ChannelRegistry:
    """Ordered set of channels owned by the pipeline for its lifetime."""

    def __init__(self, channels: list[Channel] | None = None) -> None:
        self._channels: Dict[str, Channel] = {}
        for channel in channels or []:
            self.register(channel)

    def register(self, channel: Channel) -> Channel:
        if channel.id in self._channels:
            raise ConfigurationError(f"channel '{channel.id}' registered twice")
        self._channels[channel.id] = channel
        return channel

    def get(self, channel_id: str) -> Channel:
        return self._channels[channel_id]

    def __contains__(self, channel_id: object) -> bool:
        return channel_id in self._channels

    def __iter__(self) -> Iterator[Channel]:
        return iter(list(self._channels.values()))

    def __len__(self) -> int:
        return len(self._channels)

    def ids(self) -> List[str]:
        return list(self._channels.keys())

    def by_delivery(self, mode: DeliveryMode) -> List[Channel]:
        return [c for c in self._channels.values() if c.delivery is mode]
