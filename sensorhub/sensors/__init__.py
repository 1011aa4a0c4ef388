from .base import SafeReader, SensorReader
from .config import (
    DEFAULT_CHANNELS,
    ChannelSpec,
    build_channel,
    build_registry,
    load_channel_specs_from_env,
    parse_channel_specs,
)

__all__ = [
    "DEFAULT_CHANNELS",
    "ChannelSpec",
    "SafeReader",
    "SensorReader",
    "build_channel",
    "build_registry",
    "load_channel_specs_from_env",
    "parse_channel_specs",
]
