from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from ..errors import ReadFailure

logger = logging.getLogger("sensorhub.sensors")


class SensorReader(Protocol):
    """Small internal reader interface used by channels."""

    def read(self) -> Any: ...


@dataclass
class SafeReader:
    """Wraps a reader so that only ReadFailure escapes a read.

    Repeated identical errors are logged once; a new error signature (or a
    recovery followed by a new failure) is logged again.
    """

    name: str
    reader: SensorReader
    _last_error: str | None = field(default=None, init=False, repr=False)

    def read(self) -> Any:
        try:
            value = self.reader.read()
        except Exception as exc:
            signature = f"{type(exc).__name__}:{exc}"
            if signature != self._last_error:
                logger.warning("sensor '%s' read failed: %s: %s", self.name, type(exc).__name__, exc)
                self._last_error = signature
            if isinstance(exc, ReadFailure):
                raise
            raise ReadFailure(f"{self.name}: {type(exc).__name__}: {exc}") from exc

        if self._last_error is not None:
            logger.info("sensor '%s' recovered", self.name)
            self._last_error = None
        return value
