from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ...errors import ReadFailure

logger = logging.getLogger("sensorhub.sensors")


@dataclass
class PlaceholderReader:
    """Used for channels whose hardware is not wired up yet."""

    channel_id: str
    _warned: bool = field(default=False, init=False, repr=False)

    def read(self) -> Any:
        if not self._warned:
            logger.warning("sensor for channel '%s' is not implemented yet; no readings", self.channel_id)
            self._warned = True
        raise ReadFailure(f"{self.channel_id}: no sensor backend")
