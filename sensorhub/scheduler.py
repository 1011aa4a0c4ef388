from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Sequence

from .channels import Channel
from .errors import ConfigurationError

TICK_INTERVAL_S = 1.0
MIN_INTERVAL_S = 10.0
MAX_INTERVAL_S = 120.0
TIME_TO_STALE_S = 60.0


@dataclass(frozen=True)
class PublishIntervals:
    """Timing policy for aggregate publishes.

    min_interval_s: never publish more often than this.
    max_interval_s: a channel not recorded for this long forces a publish once
        it has been read since the last publish.
    time_to_stale_s: at publish time, channels not recorded for this long are
        force-recorded with their latest reading.
    """

    min_interval_s: float = MIN_INTERVAL_S
    max_interval_s: float = MAX_INTERVAL_S
    time_to_stale_s: float = TIME_TO_STALE_S

    def validate(self) -> "PublishIntervals":
        if self.min_interval_s < 0:
            raise ConfigurationError("min publish interval must be >= 0")
        if not (self.min_interval_s < self.time_to_stale_s < self.max_interval_s):
            raise ConfigurationError(
                "publish intervals must satisfy min < stale < max "
                f"(min={self.min_interval_s} stale={self.time_to_stale_s} max={self.max_interval_s})"
            )
        return self


@dataclass
class PublishSchedule:
    last_published_at: float = 0.0
    deferred: bool = False


class PublishAction(str, Enum):
    NONE = "none"
    DEFER = "defer"
    PUBLISH = "publish"


@dataclass(frozen=True)
class PublishPlan:
    action: PublishAction
    stale: tuple[Channel, ...] = ()


class PublishScheduler:
    def __init__(self, intervals: PublishIntervals | None = None, schedule: PublishSchedule | None = None) -> None:
        self.intervals = (intervals or PublishIntervals()).validate()
        self.schedule = schedule or PublishSchedule()

    def overdue(self, channel: Channel, *, now: float) -> bool:
        return (
            channel.age_since_recorded(now) > self.intervals.max_interval_s
            and channel.last_read.timestamp > self.schedule.last_published_at
        )

    def stale(self, channel: Channel, *, now: float) -> bool:
        return (
            channel.age_since_recorded(now) > self.intervals.time_to_stale_s
            and channel.last_read.timestamp > channel.last_recorded.timestamp
        )

    def publish_needed(self, channels: Iterable[Channel], *, now: float, recorded_this_tick: bool) -> bool:
        if recorded_this_tick:
            return True
        return any(self.overdue(c, now=now) for c in channels)

    def plan(self, channels: Sequence[Channel], *, now: float, recorded_this_tick: bool) -> PublishPlan:
        wanted = self.publish_needed(channels, now=now, recorded_this_tick=recorded_this_tick)
        if not (wanted or self.schedule.deferred):
            return PublishPlan(PublishAction.NONE)

        if now - self.schedule.last_published_at < self.intervals.min_interval_s:
            self.schedule.deferred = True
            return PublishPlan(PublishAction.DEFER)

        return PublishPlan(
            PublishAction.PUBLISH,
            stale=tuple(c for c in channels if self.stale(c, now=now)),
        )

    def mark_published(self, now: float) -> None:
        self.schedule.last_published_at = now
        self.schedule.deferred = False

    def mark_nothing_to_publish(self) -> None:
        self.schedule.deferred = False
