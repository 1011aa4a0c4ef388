from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import pytest

from sensorhub.channels import Sample
from sensorhub.dispatcher import Dispatcher
from sensorhub.errors import SampleStoreError, SinkUnavailable
from sensorhub.record import TelemetryRecord
from sensorhub.sink import CompletionHandler, PushContext, PushStatus, SessionHandler, SessionState, SubmitStatus


class FakeClock:
    def __init__(self, t: float = 1_000.0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


class MemoryStore:
    """In-memory sample store; query semantics match SqliteSampleStore."""

    def __init__(self) -> None:
        self.samples: Dict[str, List[Sample]] = {}
        self.fail_queries = False

    def append(self, channel_id: str, timestamp: float, value: Any) -> bool:
        rows = self.samples.setdefault(channel_id, [])
        rows.append(Sample(value=value, timestamp=timestamp))
        rows.sort(key=lambda s: s.timestamp)
        return True

    def query(self, channel_id: str, after_timestamp: float) -> Optional[Sample]:
        if self.fail_queries:
            raise SampleStoreError("store offline")
        for sample in self.samples.get(channel_id, []):
            if sample.timestamp > after_timestamp:
                return sample
        return None


@dataclass
class Push:
    record: TelemetryRecord
    context: PushContext
    on_complete: CompletionHandler

    def complete(self, status: PushStatus) -> None:
        self.on_complete(status, self.context)


class FakeSink:
    def __init__(self, state: SessionState = SessionState.STARTED) -> None:
        self.state = state
        self.pushes: List[Push] = []
        self.handlers: List[SessionHandler] = []
        self.refuse = False

    def push(self, record: TelemetryRecord, *, context: PushContext, on_complete: CompletionHandler) -> SubmitStatus:
        if self.refuse:
            raise SinkUnavailable("sink offline")
        self.pushes.append(Push(record=record, context=context, on_complete=on_complete))
        return SubmitStatus.ACCEPTED

    def session_state(self) -> SessionState:
        return self.state

    def add_session_handler(self, handler: SessionHandler) -> None:
        self.handlers.append(handler)

    def notify(self, state: SessionState) -> None:
        self.state = state
        for handler in self.handlers:
            handler(state)

    def pop(self) -> Push:
        return self.pushes.pop(0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def dispatcher(clock: FakeClock) -> Dispatcher:
    return Dispatcher(clock=clock)


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def sink() -> FakeSink:
    return FakeSink()
