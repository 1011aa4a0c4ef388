from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable, Dict, Optional

from .channels import Channel, ChannelRegistry, DeliveryMode, Sample
from .delivery import RETRY_INITIAL_S, RETRY_MAX_S, DeliveryController, DeliveryState
from .dispatcher import Dispatcher, TimerHandle
from .errors import ReadFailure, RecordFailure, SinkUnavailable
from .record import DEFAULT_MAX_ENTRIES, TelemetryRecord
from .scheduler import TICK_INTERVAL_S, PublishAction, PublishIntervals, PublishScheduler
from .sink import PushContext, PushStatus, SessionState, TelemetrySink
from .store import SampleStore

logger = logging.getLogger("sensorhub.pipeline")


class Pipeline:
    """Periodic read/record/publish driver.

    Each tick reads every channel. Aggregate channels that cross their threshold
    are encoded into a shared record which the publish scheduler ships as one
    push; stream channels are appended to the sample store and handed to their
    delivery controller. Everything runs on the dispatcher.
    """

    def __init__(
        self,
        registry: ChannelRegistry,
        *,
        sink: TelemetrySink,
        store: SampleStore,
        dispatcher: Dispatcher,
        intervals: PublishIntervals | None = None,
        tick_interval_s: float = TICK_INTERVAL_S,
        retry_initial_s: float = RETRY_INITIAL_S,
        retry_max_s: float = RETRY_MAX_S,
        max_record_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ) -> None:
        self.registry = registry
        self.sink = sink
        self.store = store
        self.dispatcher = dispatcher
        self.scheduler = PublishScheduler(intervals)
        self.tick_interval_s = float(tick_interval_s)
        self.max_record_entries = int(max_record_entries)
        self.clock = clock

        self.deliveries: Dict[str, DeliveryController] = {
            channel.id: DeliveryController(
                channel,
                store=store,
                sink=sink,
                dispatcher=dispatcher,
                retry_initial_s=retry_initial_s,
                retry_max_s=retry_max_s,
                rng=rng,
            )
            for channel in registry.by_delivery(DeliveryMode.STREAM)
        }

        self.record = TelemetryRecord(max_entries=self.max_record_entries)
        self.session_active = False
        self._tick_handle: Optional[TimerHandle] = None

        self.ticks_total = 0
        self.read_failures_total = 0
        self.record_failures_total = 0
        self.store_failures_total = 0
        self.publishes_total = 0
        self.publishes_deferred_total = 0
        self.publish_failures_total = 0
        self.aggregate_push_failures_total = 0

    # -----------------------------
    # Lifecycle
    # -----------------------------

    def start(self) -> None:
        self.sink.add_session_handler(self.on_session_notification)
        self.set_session(self.sink.session_state())
        self._tick_handle = self.dispatcher.call_every(self.tick_interval_s, self.tick)
        logger.info(
            "pipeline started: %s channels (%s stream), tick=%ss",
            len(self.registry),
            len(self.deliveries),
            self.tick_interval_s,
        )

    def stop(self) -> None:
        if self._tick_handle is not None:
            self._tick_handle.cancel()
            self._tick_handle = None

    # -----------------------------
    # Session
    # -----------------------------

    def on_session_notification(self, state: SessionState) -> None:
        """Session handler registered with the sink; may be called from any thread."""

        self.dispatcher.post(self.set_session, state)

    def set_session(self, state: SessionState) -> None:
        active = state is SessionState.STARTED
        if active != self.session_active:
            logger.info("telemetry session %s; ticks %s", state.value, "resumed" if active else "suspended")
        self.session_active = active

    # -----------------------------
    # Tick
    # -----------------------------

    def tick(self) -> None:
        if not self.session_active:
            return
        self.ticks_total += 1
        now = self.clock()

        recorded = False
        for channel in self.registry:
            try:
                value = channel.read()
            except ReadFailure as exc:
                self.read_failures_total += 1
                logger.debug("%s: read failed: %s", channel.id, exc)
                continue

            channel.mark_read(value, now)
            if channel.wants_record(value):
                if self._record(channel, value, now):
                    recorded = True

        self._maybe_publish(now, recorded_this_tick=recorded)

    def _record(self, channel: Channel, value: Any, timestamp: float) -> bool:
        """Record a reading. Returns True if it landed in the aggregate record."""

        if channel.delivery is DeliveryMode.STREAM:
            if not self.store.append(channel.id, timestamp, value):
                self.store_failures_total += 1
                logger.warning("%s: sample at %s not stored", channel.id, timestamp)
                return False
            channel.mark_recorded(value, timestamp)
            self.deliveries[channel.id].on_sample(Sample(value=channel.last_recorded.value, timestamp=timestamp))
            return False

        return self._record_aggregate(channel, value, timestamp)

    def _record_aggregate(self, channel: Channel, value: Any, timestamp: float) -> bool:
        try:
            channel.encode(self.record, timestamp, value)
        except RecordFailure as exc:
            self.record_failures_total += 1
            logger.warning("%s: not recorded: %s", channel.id, exc)
            return False
        channel.mark_recorded(value, timestamp)
        return True

    # -----------------------------
    # Publish
    # -----------------------------

    def _maybe_publish(self, now: float, *, recorded_this_tick: bool) -> None:
        plan = self.scheduler.plan(
            self.registry.by_delivery(DeliveryMode.AGGREGATE),
            now=now,
            recorded_this_tick=recorded_this_tick,
        )
        if plan.action is PublishAction.NONE:
            return
        if plan.action is PublishAction.DEFER:
            self.publishes_deferred_total += 1
            return

        for channel in plan.stale:
            logger.debug("%s: stale; recording last reading", channel.id)
            self._record_aggregate(channel, channel.last_read.value, channel.last_read.timestamp)

        if self.record.is_empty():
            self.scheduler.mark_nothing_to_publish()
            return
        self._publish(now)

    def _publish(self, now: float) -> None:
        record = self.record
        try:
            self.sink.push(record, context=PushContext(channel_id=None, timestamp=now), on_complete=self.on_sink_complete)
        except SinkUnavailable as exc:
            self.publish_failures_total += 1
            logger.warning("publish of %s entries refused; kept for the next publish: %s", len(record), exc)
            return

        self.publishes_total += 1
        self.scheduler.mark_published(now)
        self.record = TelemetryRecord(max_entries=self.max_record_entries)
        logger.debug("published %s entries (message_id=%s)", len(record), record.message_id)

    def on_sink_complete(self, status: PushStatus, context: PushContext) -> None:
        self.dispatcher.post(self.on_aggregate_complete, status, context)

    def on_aggregate_complete(self, status: PushStatus, context: PushContext) -> None:
        if status is PushStatus.SUCCESS:
            return
        self.aggregate_push_failures_total += 1
        if status is PushStatus.MALFORMED:
            logger.error("aggregate record from %s rejected as malformed", context.timestamp)
        else:
            logger.warning("aggregate record from %s failed to deliver", context.timestamp)

    # -----------------------------
    # Metrics
    # -----------------------------

    def metrics(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "session_active": self.session_active,
            "ticks_total": self.ticks_total,
            "read_failures_total": self.read_failures_total,
            "record_failures_total": self.record_failures_total,
            "store_failures_total": self.store_failures_total,
            "publishes_total": self.publishes_total,
            "publishes_deferred_total": self.publishes_deferred_total,
            "publish_failures_total": self.publish_failures_total,
            "aggregate_push_failures_total": self.aggregate_push_failures_total,
            "pending_record_entries": len(self.record),
        }
        for state in DeliveryState:
            out[f"delivery_{state.value}"] = sum(1 for d in self.deliveries.values() if d.state is state)
        out["delivered_total"] = sum(d.delivered_total for d in self.deliveries.values())

        store_metrics = getattr(self.store, "metrics", None)
        if callable(store_metrics):
            out.update(store_metrics())
        return out
