from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .channels import Channel, Sample
from .dispatcher import Dispatcher, TimerHandle
from .errors import RecordFailure, SampleStoreError, SinkUnavailable
from .record import TelemetryRecord
from .sink import PushContext, PushStatus, SubmitStatus, TelemetrySink
from .store import SampleStore

logger = logging.getLogger("sensorhub.delivery")

RETRY_INITIAL_S = 5.0
RETRY_MAX_S = 300.0


class DeliveryState(str, Enum):
    IDLE = "idle"
    PUSHING = "pushing"
    BACKLOGGED = "backlogged"
    FAULT = "fault"


@dataclass
class DeliveryRecord:
    state: DeliveryState = DeliveryState.IDLE
    last_delivered_timestamp: float = 0.0
    pending_timestamp: float = 0.0
    consecutive_failures: int = 0


class _Submit(str, Enum):
    SENT = "sent"
    SKIPPED = "skipped"
    REFUSED = "refused"


def retry_delay_s(
    consecutive_failures: int,
    *,
    initial_s: float = RETRY_INITIAL_S,
    max_s: float = RETRY_MAX_S,
    rng: random.Random | None = None,
) -> float:
    """Exponential backoff with +/-20% jitter, capped at max_s."""

    exponent = min(max(0, int(consecutive_failures) - 1), 8)
    base = min(float(max_s), float(initial_s) * (2**exponent))
    jittered = base * (rng or random).uniform(0.8, 1.2)
    return min(float(max_s), jittered)


class DeliveryController:
    """Delivers one stream channel's samples in timestamp order, one push at a time.

    Samples are appended to the store before they reach on_sample(), so after
    any interruption the controller can catch up by asking the store for the
    oldest sample newer than last_delivered_timestamp. All methods must run on
    the dispatcher thread; sink completions are re-posted there.
    """

    def __init__(
        self,
        channel: Channel,
        *,
        store: SampleStore,
        sink: TelemetrySink,
        dispatcher: Dispatcher,
        retry_initial_s: float = RETRY_INITIAL_S,
        retry_max_s: float = RETRY_MAX_S,
        rng: random.Random | None = None,
    ) -> None:
        self.channel = channel
        self.store = store
        self.sink = sink
        self.dispatcher = dispatcher
        self.retry_initial_s = float(retry_initial_s)
        self.retry_max_s = float(retry_max_s)
        self.rng = rng or random.Random()

        self.record = DeliveryRecord()
        self.delivered_total = 0
        self.skipped_total = 0
        self.failures_total = 0
        self._retry_token = 0
        self._primed = False
        self._retry_handle: Optional[TimerHandle] = None

    @property
    def state(self) -> DeliveryState:
        return self.record.state

    # -----------------------------
    # Events
    # -----------------------------

    def on_sample(self, sample: Sample) -> None:
        if not self._primed:
            # Stored samples older than the first one seen here belong to an earlier run.
            self._primed = True
            floor = math.nextafter(sample.timestamp, -math.inf)
            self.record.last_delivered_timestamp = max(self.record.last_delivered_timestamp, floor)

        state = self.record.state
        if state is DeliveryState.IDLE:
            if sample.timestamp <= self.record.last_delivered_timestamp:
                return
            outcome = self._submit(sample)
            if outcome is _Submit.SENT:
                self.record.state = DeliveryState.PUSHING
            elif outcome is _Submit.SKIPPED:
                self._advance(sample.timestamp)
            else:
                self._fault()
        elif state is DeliveryState.PUSHING:
            self.record.state = DeliveryState.BACKLOGGED
        elif state is DeliveryState.FAULT:
            self._cancel_retry()
            self.record.state = DeliveryState.BACKLOGGED
            self._drain()
        # BACKLOGGED: the drain already in progress will pick the sample up.

    def on_complete(self, status: PushStatus, context: PushContext) -> None:
        state = self.record.state
        if state not in (DeliveryState.PUSHING, DeliveryState.BACKLOGGED) or (
            context.timestamp != self.record.pending_timestamp
        ):
            logger.warning(
                "%s: ignoring %s completion for %s in state %s",
                self.channel.id,
                status.value,
                context.timestamp,
                state.value,
            )
            return

        if status is PushStatus.SUCCESS:
            self.delivered_total += 1
            self.record.consecutive_failures = 0
            self._advance(context.timestamp)
            if state is DeliveryState.PUSHING:
                self.record.state = DeliveryState.IDLE
            else:
                self._drain()
        elif status is PushStatus.MALFORMED:
            logger.error("%s: sample at %s rejected as malformed; skipping", self.channel.id, context.timestamp)
            self.skipped_total += 1
            self._advance(context.timestamp)
            self._drain()
        else:
            logger.warning("%s: push of sample at %s failed", self.channel.id, context.timestamp)
            self._fault()

    def on_sink_complete(self, status: PushStatus, context: PushContext) -> None:
        """Completion callback handed to the sink; may be called from any thread."""

        self.dispatcher.post(self.on_complete, status, context)

    # -----------------------------
    # Internals
    # -----------------------------

    def _advance(self, timestamp: float) -> None:
        if timestamp > self.record.last_delivered_timestamp:
            self.record.last_delivered_timestamp = timestamp

    def _submit(self, sample: Sample) -> _Submit:
        record = TelemetryRecord()
        try:
            self.channel.encode(record, sample.timestamp, sample.value)
        except RecordFailure as exc:
            logger.error("%s: cannot encode sample at %s: %s", self.channel.id, sample.timestamp, exc)
            self.skipped_total += 1
            return _Submit.SKIPPED

        context = PushContext(channel_id=self.channel.id, timestamp=sample.timestamp)
        try:
            status = self.sink.push(record, context=context, on_complete=self.on_sink_complete)
        except SinkUnavailable as exc:
            logger.warning("%s: sink refused sample at %s: %s", self.channel.id, sample.timestamp, exc)
            return _Submit.REFUSED

        if status is SubmitStatus.BUSY:
            logger.debug("%s: sink busy; sample at %s queued", self.channel.id, sample.timestamp)
        self.record.pending_timestamp = sample.timestamp
        return _Submit.SENT

    def _drain(self) -> None:
        while True:
            try:
                sample = self.store.query(self.channel.id, self.record.last_delivered_timestamp)
            except SampleStoreError as exc:
                logger.error("%s: %s", self.channel.id, exc)
                self._fault()
                return

            if sample is None:
                self.record.state = DeliveryState.IDLE
                return

            outcome = self._submit(sample)
            if outcome is _Submit.SENT:
                self.record.state = DeliveryState.BACKLOGGED
                return
            if outcome is _Submit.REFUSED:
                self._fault()
                return
            self._advance(sample.timestamp)

    def _fault(self) -> None:
        self.failures_total += 1
        self.record.consecutive_failures += 1
        self.record.state = DeliveryState.FAULT
        delay = retry_delay_s(
            self.record.consecutive_failures,
            initial_s=self.retry_initial_s,
            max_s=self.retry_max_s,
            rng=self.rng,
        )
        self._cancel_retry()
        token = self._retry_token
        self._retry_handle = self.dispatcher.call_later(delay, self._retry, token)
        logger.info("%s: delivery fault; retrying in %.1fs", self.channel.id, delay)

    def _cancel_retry(self) -> None:
        self._retry_token += 1
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    def _retry(self, token: int) -> None:
        if token != self._retry_token or self.record.state is not DeliveryState.FAULT:
            return
        self._retry_handle = None
        self.record.state = DeliveryState.BACKLOGGED
        self._drain()
