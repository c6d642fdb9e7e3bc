"""
Entry codec: validation and conversion of raw rows into memory entries.
"""

from .entry_codec import (
    ENTRY_COLUMNS,
    EntryCodec,
    ValidationError,
    entry_to_row,
    format_timestamp,
    normalize_json_field,
    parse_timestamp,
    row_to_dict,
    row_to_entry,
)

__all__ = [
    "ENTRY_COLUMNS",
    "EntryCodec",
    "ValidationError",
    "entry_to_row",
    "format_timestamp",
    "normalize_json_field",
    "parse_timestamp",
    "row_to_dict",
    "row_to_entry",
]
