"""Index catalog and dump bookkeeping."""

from .dumps import DumpRegistry
from .registry import DEFAULT_SETTINGS, SETTING_FIELDS, Index, IndexRegistry, validate_settings

__all__ = [
    "DumpRegistry",
    "IndexRegistry",
    "Index",
    "DEFAULT_SETTINGS",
    "SETTING_FIELDS",
    "validate_settings",
]
