from __future__ import annotations

import random
from typing import Any, Iterable, List

import pytest

from sensorhub.change_detector import scalar_exceeds, vector_exceeds
from sensorhub.channels import Channel, ChannelKind, ChannelRegistry, DeliveryMode
from sensorhub.delivery import DeliveryState
from sensorhub.errors import ReadFailure
from sensorhub.pipeline import Pipeline
from sensorhub.record import scalar_encoder, vector_encoder
from sensorhub.scheduler import PublishIntervals
from sensorhub.sink import PushStatus, SessionState


class _Readings:
    """Returns queued readings in order, repeating the last one when exhausted."""

    def __init__(self, values: Iterable[Any]) -> None:
        self.values: List[Any] = list(values)
        self.calls = 0

    def __call__(self) -> Any:
        self.calls += 1
        value = self.values.pop(0) if len(self.values) > 1 else self.values[0]
        if isinstance(value, Exception):
            raise value
        return value


def _light(readings: _Readings) -> Channel:
    return Channel(
        id="light",
        kind=ChannelKind.SCALAR,
        reader=readings,
        threshold=scalar_exceeds(200),
        encoder=scalar_encoder("Sensors/Light/Level", as_int=True),
    )


def _pressure(readings: _Readings) -> Channel:
    return Channel(
        id="pressure",
        kind=ChannelKind.SCALAR,
        reader=readings,
        threshold=scalar_exceeds(1.0),
        encoder=scalar_encoder("Sensors/Pressure/Pressure"),
    )


def _position(readings: _Readings) -> Channel:
    return Channel(
        id="position",
        kind=ChannelKind.VECTOR,
        reader=readings,
        threshold=vector_exceeds(0.0, ("lat", "lon")),
        encoder=vector_encoder({"lat": "lwm2m/6/0/0", "lon": "lwm2m/6/0/1"}),
        delivery=DeliveryMode.STREAM,
        components=("lat", "lon"),
    )


def _pipeline(channels: List[Channel], *, sink, store, dispatcher, clock) -> Pipeline:
    pipeline = Pipeline(
        ChannelRegistry(channels),
        sink=sink,
        store=store,
        dispatcher=dispatcher,
        intervals=PublishIntervals(min_interval_s=10, max_interval_s=120, time_to_stale_s=60),
        retry_initial_s=1.0,
        retry_max_s=4.0,
        clock=clock,
        rng=random.Random(3),
    )
    pipeline.start()
    return pipeline


def _points(push) -> dict[str, Any]:
    return {path: value for path, (value, _) in push.record.latest().items()}


def test_light_records_only_on_threshold_crossing(sink, store, dispatcher, clock) -> None:
    light = _light(_Readings([1000, 1150, 1250]))
    pipeline = _pipeline([light], sink=sink, store=store, dispatcher=dispatcher, clock=clock)

    pipeline.tick()
    assert _points(sink.pop()) == {"Sensors/Light/Level": 1000}

    clock.advance(1.0)
    pipeline.tick()
    assert light.last_read.value == 1150
    assert light.last_recorded.value == 1000
    assert sink.pushes == []

    clock.advance(1.0)
    pipeline.tick()
    assert light.last_recorded.value == 1250
    # Within the minimum interval: deferred, not dropped.
    assert sink.pushes == []
    assert pipeline.scheduler.schedule.deferred is True

    clock.t = 1_010.0
    pipeline.tick()
    assert _points(sink.pop()) == {"Sensors/Light/Level": 1250}
    assert pipeline.publishes_total == 2
    assert pipeline.publishes_deferred_total == 1


def test_pressure_records_only_on_threshold_crossing(sink, store, dispatcher, clock) -> None:
    pressure = _pressure(_Readings([101.0, 101.8, 102.1]))
    pipeline = _pipeline([pressure], sink=sink, store=store, dispatcher=dispatcher, clock=clock)

    pipeline.tick()
    clock.advance(15.0)
    pipeline.tick()
    assert pressure.last_recorded.value == 101.0

    clock.advance(15.0)
    pipeline.tick()
    assert pressure.last_recorded.value == 102.1
    assert [_points(p) for p in sink.pushes] == [
        {"Sensors/Pressure/Pressure": 101.0},
        {"Sensors/Pressure/Pressure": 102.1},
    ]


def test_ticks_are_suspended_while_session_is_down(sink, store, dispatcher, clock) -> None:
    sink.state = SessionState.STOPPED
    readings = _Readings([1000])
    pipeline = _pipeline([_light(readings)], sink=sink, store=store, dispatcher=dispatcher, clock=clock)

    assert pipeline.session_active is False
    pipeline.tick()
    assert readings.calls == 0

    sink.notify(SessionState.STARTED)
    dispatcher.run_pending()
    pipeline.tick()
    assert readings.calls == 1
    assert len(sink.pushes) == 1

    sink.notify(SessionState.STOPPED)
    dispatcher.run_pending()
    pipeline.tick()
    assert readings.calls == 1


def test_scheduled_ticks_run_on_the_dispatcher(sink, store, dispatcher, clock) -> None:
    readings = _Readings([1000])
    _pipeline([_light(readings)], sink=sink, store=store, dispatcher=dispatcher, clock=clock)

    for _ in range(3):
        clock.advance(1.0)
        dispatcher.run_pending()

    assert readings.calls == 3


def test_read_failure_skips_only_that_channel(sink, store, dispatcher, clock) -> None:
    light = _light(_Readings([ReadFailure("i2c timeout"), 900]))
    pressure = _pressure(_Readings([101.0]))
    pipeline = _pipeline([light, pressure], sink=sink, store=store, dispatcher=dispatcher, clock=clock)

    pipeline.tick()

    assert light.never_recorded
    assert pipeline.read_failures_total == 1
    assert _points(sink.pop()) == {"Sensors/Pressure/Pressure": 101.0}

    clock.advance(10.0)
    pipeline.tick()
    assert _points(sink.pop()) == {"Sensors/Light/Level": 900}


def test_stale_channel_is_swept_into_the_next_publish(sink, store, dispatcher, clock) -> None:
    light = _light(_Readings([1000, 1000, 1300]))
    pressure = _pressure(_Readings([101.0, 101.5, 101.5]))
    pipeline = _pipeline([light, pressure], sink=sink, store=store, dispatcher=dispatcher, clock=clock)

    pipeline.tick()
    sink.pop()

    clock.advance(30.0)
    pipeline.tick()
    assert sink.pushes == []

    clock.advance(35.0)
    pipeline.tick()

    # light crossed its threshold; pressure has a newer unrecorded reading and is 65s old.
    assert _points(sink.pop()) == {
        "Sensors/Light/Level": 1300,
        "Sensors/Pressure/Pressure": 101.5,
    }
    assert pressure.last_recorded.timestamp == 1_065.0


def test_overdue_channel_forces_a_publish(sink, store, dispatcher, clock) -> None:
    pressure = _pressure(_Readings([101.0, 101.2]))
    pipeline = _pipeline([pressure], sink=sink, store=store, dispatcher=dispatcher, clock=clock)

    pipeline.tick()
    sink.pop()

    clock.advance(100.0)
    pipeline.tick()
    assert sink.pushes == []

    clock.advance(21.0)
    pipeline.tick()

    (push,) = sink.pushes
    assert _points(push) == {"Sensors/Pressure/Pressure": 101.2}
    assert pressure.last_recorded.timestamp == 1_121.0


def test_refused_publish_keeps_record_for_the_next_trigger(sink, store, dispatcher, clock) -> None:
    light = _light(_Readings([1000, 1000, 1300]))
    pipeline = _pipeline([light], sink=sink, store=store, dispatcher=dispatcher, clock=clock)

    sink.refuse = True
    pipeline.tick()
    assert pipeline.publish_failures_total == 1
    assert len(pipeline.record) == 1
    assert pipeline.scheduler.schedule.deferred is False

    # Nothing new was recorded, so the kept record waits.
    sink.refuse = False
    clock.advance(1.0)
    pipeline.tick()
    assert sink.pushes == []

    clock.advance(10.0)
    pipeline.tick()

    push = sink.pop()
    assert [e.value for e in push.record.entries] == [1000, 1300]
    assert pipeline.record.is_empty()


def test_encode_failure_is_retried_next_tick(sink, store, dispatcher, clock) -> None:
    light = _light(_Readings([float("inf"), 1000]))
    pipeline = _pipeline([light], sink=sink, store=store, dispatcher=dispatcher, clock=clock)

    pipeline.tick()
    assert light.never_recorded
    # The staleness sweep retries the same reading and fails again.
    assert pipeline.record_failures_total == 2
    assert sink.pushes == []

    clock.advance(1.0)
    pipeline.tick()
    assert light.last_recorded.value == 1000


def test_failed_aggregate_completion_is_counted(sink, store, dispatcher, clock) -> None:
    pipeline = _pipeline([_light(_Readings([1000]))], sink=sink, store=store, dispatcher=dispatcher, clock=clock)

    pipeline.tick()
    sink.pop().complete(PushStatus.FAILED)
    dispatcher.run_pending()

    assert pipeline.aggregate_push_failures_total == 1


def test_stream_channel_is_stored_and_delivered_in_order(sink, store, dispatcher, clock) -> None:
    fixes = [{"lat": 37.0 + i / 100, "lon": -102.0} for i in range(4)]
    position = _position(_Readings(fixes))
    light = _light(_Readings([1000]))
    pipeline = _pipeline([light, position], sink=sink, store=store, dispatcher=dispatcher, clock=clock)

    pipeline.tick()
    aggregate = [p for p in sink.pushes if p.context.channel_id is None]
    assert _points(aggregate[0]) == {"Sensors/Light/Level": 1000}

    for _ in range(3):
        clock.advance(1.0)
        pipeline.tick()

    assert [s.timestamp for s in store.samples["position"]] == [1_000.0, 1_001.0, 1_002.0, 1_003.0]
    assert pipeline.deliveries["position"].state is DeliveryState.BACKLOGGED

    delivered = []
    while True:
        stream = [p for p in sink.pushes if p.context.channel_id == "position"]
        if not stream:
            break
        push = stream[0]
        sink.pushes.remove(push)
        delivered.append(_points(push)["lwm2m/6/0/0"])
        push.complete(PushStatus.SUCCESS)
        dispatcher.run_pending()

    assert delivered == pytest.approx([37.0, 37.01, 37.02, 37.03])
    assert pipeline.deliveries["position"].state is DeliveryState.IDLE

    metrics = pipeline.metrics()
    assert metrics["delivered_total"] == 4
    assert metrics["delivery_idle"] == 1
    assert metrics["publishes_total"] == 1


def test_partial_vector_reading_does_not_stop_later_channels(sink, store, dispatcher, clock) -> None:
    acceleration = Channel(
        id="acceleration",
        kind=ChannelKind.VECTOR,
        reader=_Readings([{"x": 0.0, "y": 9.8}, {"x": 9.0}]),
        threshold=vector_exceeds(4.9, ("x", "y")),
        encoder=vector_encoder({"x": "Sensors/Accelerometer/Acceleration/X", "y": "Sensors/Accelerometer/Acceleration/Y"}),
        components=("x", "y"),
    )
    light = _light(_Readings([1000, 1500]))
    pipeline = _pipeline([acceleration, light], sink=sink, store=store, dispatcher=dispatcher, clock=clock)

    pipeline.tick()
    sink.pop()

    clock.advance(10.0)
    pipeline.tick()

    assert pipeline.read_failures_total == 1
    assert light.last_read.timestamp == 1_010.0
    assert _points(sink.pop()) == {"Sensors/Light/Level": 1500}
