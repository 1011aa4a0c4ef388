from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

import requests

from .errors import SinkUnavailable
from .record import TelemetryRecord

logger = logging.getLogger("sensorhub.sink")


class PushStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    MALFORMED = "malformed"


class SubmitStatus(str, Enum):
    ACCEPTED = "accepted"
    BUSY = "busy"


class SessionState(str, Enum):
    STARTED = "started"
    STOPPED = "stopped"


@dataclass(frozen=True)
class PushContext:
    """Identifies what a completion refers to. channel_id is None for aggregate pushes."""

    channel_id: Optional[str]
    timestamp: float


CompletionHandler = Callable[[PushStatus, PushContext], None]
SessionHandler = Callable[[SessionState], None]


class TelemetrySink(Protocol):
    def push(
        self,
        record: TelemetryRecord,
        *,
        context: PushContext,
        on_complete: CompletionHandler,
    ) -> SubmitStatus: ...

    def session_state(self) -> SessionState: ...

    def add_session_handler(self, handler: SessionHandler) -> None: ...


def classify_status_code(status_code: int) -> PushStatus:
    if 200 <= status_code < 300:
        return PushStatus.SUCCESS
    if status_code in (400, 422):
        return PushStatus.MALFORMED
    return PushStatus.FAILED


@dataclass
class Submission:
    record: TelemetryRecord
    context: PushContext
    on_complete: CompletionHandler


class HttpTelemetrySink:
    """Posts telemetry records to the ingest API from a single worker thread.

    push() never blocks on the network: records are queued and their outcome is
    reported later through the per-record completion callback, which runs on the
    worker thread. Callers that need a single thread of control must re-post the
    callback onto their own dispatcher.

    Session state follows reachability: a successful health probe or push starts
    the session, `failures_before_stop` consecutive transport failures stop it.
    """

    def __init__(
        self,
        *,
        api_url: str,
        token: str,
        device_id: str,
        timeout_s: float = 5.0,
        max_pending: int = 64,
        failures_before_stop: int = 3,
        probe_interval_s: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.token = token
        self.device_id = device_id
        self.timeout_s = float(timeout_s)
        self.failures_before_stop = max(1, int(failures_before_stop))
        self.probe_interval_s = max(1.0, float(probe_interval_s))

        self._http = session or requests.Session()
        self._queue: "queue.Queue[Submission | None]" = queue.Queue(maxsize=max(1, int(max_pending)))
        self._lock = threading.Lock()
        self._state = SessionState.STOPPED
        self._handlers: List[SessionHandler] = []
        self._consecutive_failures = 0
        self._closed = threading.Event()
        self._threads: List[threading.Thread] = []

    # -----------------------------
    # Lifecycle
    # -----------------------------

    def start(self) -> None:
        """Probe the endpoint once, then start the worker and probe threads."""

        self.probe()
        for name, target in (("sensorhub-sink", self._worker), ("sensorhub-probe", self._probe_loop)):
            t = threading.Thread(target=target, name=name, daemon=True)
            t.start()
            self._threads.append(t)

    def close(self, timeout_s: float = 2.0) -> None:
        """Stop accepting records and let the worker finish what is queued."""

        self._closed.set()
        try:
            self._queue.put(None, timeout=timeout_s)
        except queue.Full:
            logger.warning("sink queue still full at close; %s records not sent", self._queue.qsize())
        for t in self._threads:
            t.join(timeout=timeout_s)
        self._http.close()

    # -----------------------------
    # Session
    # -----------------------------

    def session_state(self) -> SessionState:
        with self._lock:
            return self._state

    def add_session_handler(self, handler: SessionHandler) -> None:
        with self._lock:
            self._handlers.append(handler)

    def _set_state(self, state: SessionState) -> None:
        with self._lock:
            if state is self._state:
                return
            self._state = state
            handlers = list(self._handlers)
        logger.info("telemetry session %s (api=%s)", state.value, self.api_url)
        for handler in handlers:
            handler(state)

    def _note_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
        self._set_state(SessionState.STARTED)

    def _note_transport_failure(self) -> None:
        with self._lock:
            self._consecutive_failures += 1
            failures = self._consecutive_failures
        if failures >= self.failures_before_stop:
            self._set_state(SessionState.STOPPED)

    def probe(self) -> bool:
        try:
            resp = self._http.get(f"{self.api_url}/health", timeout=self.timeout_s)
        except requests.RequestException as exc:
            logger.debug("health probe failed: %r", exc)
            self._note_transport_failure()
            return False
        if 200 <= resp.status_code < 300:
            self._note_success()
            return True
        logger.debug("health probe returned %s", resp.status_code)
        self._note_transport_failure()
        return False

    def _probe_loop(self) -> None:
        while not self._closed.wait(self.probe_interval_s):
            if self.session_state() is SessionState.STOPPED:
                self.probe()

    # -----------------------------
    # Push
    # -----------------------------

    def push(
        self,
        record: TelemetryRecord,
        *,
        context: PushContext,
        on_complete: CompletionHandler,
    ) -> SubmitStatus:
        if self._closed.is_set():
            raise SinkUnavailable("sink is closed")
        busy = not self._queue.empty()
        try:
            self._queue.put_nowait(Submission(record=record, context=context, on_complete=on_complete))
        except queue.Full as exc:
            raise SinkUnavailable(f"sink queue full ({self._queue.maxsize} pending)") from exc
        return SubmitStatus.BUSY if busy else SubmitStatus.ACCEPTED

    def _post(self, record: TelemetryRecord) -> requests.Response:
        return self._http.post(
            f"{self.api_url}/api/v1/telemetry",
            headers={"Authorization": f"Bearer {self.token}"},
            json=record.to_payload(device_id=self.device_id),
            timeout=self.timeout_s,
        )

    def deliver(self, submission: Submission) -> PushStatus:
        """Send one record synchronously and classify the outcome."""

        try:
            resp = self._post(submission.record)
        except requests.RequestException as exc:
            logger.warning("push %s failed: %r", submission.record.message_id, exc)
            self._note_transport_failure()
            return PushStatus.FAILED

        status = classify_status_code(resp.status_code)
        if status is PushStatus.FAILED:
            logger.warning(
                "push %s rejected: %s %s",
                submission.record.message_id,
                resp.status_code,
                resp.text[:200],
            )
            self._note_transport_failure()
        elif status is PushStatus.MALFORMED:
            logger.error(
                "push %s malformed: %s %s",
                submission.record.message_id,
                resp.status_code,
                resp.text[:200],
            )
            self._note_success()
        else:
            self._note_success()
        return status

    def _worker(self) -> None:
        while True:
            item = self._queue.get()
            if item is None:
                return
            status = self.deliver(item)
            try:
                item.on_complete(status, item.context)
            except Exception:
                logger.exception("push completion handler failed")

    def metrics(self) -> Dict[str, Any]:
        return {
            "sink_pending": self._queue.qsize(),
            "sink_session": self.session_state().value,
        }
