from .mock import MockReader
from .placeholder import PlaceholderReader
from .sysfs import SysfsAttribute, SysfsReader

__all__ = [
    "MockReader",
    "PlaceholderReader",
    "SysfsAttribute",
    "SysfsReader",
]
