from __future__ import annotations


class ReadFailure(RuntimeError):
    """A sensor read failed. Transient: the channel is skipped for this cycle."""


class RecordFailure(RuntimeError):
    """Recording a value into a telemetry record failed."""


class EncodeFailure(RecordFailure):
    """The value could not be encoded for the channel's record layout."""


class OverflowFailure(RecordFailure):
    """The telemetry record has no room left for the value."""


class SinkUnavailable(RuntimeError):
    """The telemetry sink refused a record at submission time."""


class SampleStoreError(RuntimeError):
    """The buffered sample store could not answer a query."""


class ConfigurationError(ValueError):
    """Invalid or unusable agent configuration. Fatal at start-up."""
