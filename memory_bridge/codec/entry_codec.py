"""
Conversion between raw storage rows and MemoryEntry objects.

Rows coming out of the row-store source (and out of the relational backends)
are plain mappings keyed by column name. JSON-bearing columns may hold either
serialized text or already-structured values depending on the driver, so each
of them goes through one explicit normalization step before it reaches the
model.
"""

import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from memory_bridge.model.memory_entry import MemoryEntry

REQUIRED_FIELDS = ("id", "agent_id", "session_id", "type", "content", "timestamp")

# Column order shared by every backend's INSERT statements.
ENTRY_COLUMNS = (
    "id",
    "agent_id",
    "session_id",
    "type",
    "content",
    "context",
    "timestamp",
    "tags",
    "version",
    "parent_id",
    "metadata",
)


class ValidationError(Exception):
    """Raised when a raw row cannot be turned into a MemoryEntry."""

    def __init__(self, message: str, row_id: Optional[Any] = None):
        super().__init__(message)
        self.row_id = row_id


def parse_timestamp(value: Any) -> datetime:
    """
    Parse a stored timestamp into a timezone-aware datetime.

    Accepts datetime objects, ISO-8601 strings (a trailing ``Z`` is allowed)
    and epoch milliseconds given as numbers or digit strings. Naive values
    are taken to be UTC.

    Raises:
        ValueError: If the value cannot be interpreted as a point in time
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            parsed = datetime.fromtimestamp(int(text) / 1000.0, tz=timezone.utc)
        else:
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime) -> str:
    """
    Format a datetime as fixed-width UTC ISO-8601 text.

    The fixed width keeps lexicographic order equal to chronological order,
    which text-typed timestamp columns rely on for sorting and range filters.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def normalize_json_field(
    value: Any, field_name: str, expected_type: type, default: Callable[[], Any]
) -> Any:
    """
    Normalize a JSON-bearing column to its structured form.

    Args:
        value: Column value; serialized JSON text or an already-structured value
        field_name: Column name used in error messages
        expected_type: ``dict`` or ``list``
        default: Factory for the value used when the column is null

    Returns:
        The structured value

    Raises:
        ValidationError: If the text is not valid JSON or the decoded value
            has the wrong type
    """
    if value is None:
        return default()

    if isinstance(value, (str, bytes, bytearray)):
        try:
            decoded = json.loads(value)
        except (ValueError, RecursionError) as e:
            raise ValidationError(f"Field '{field_name}' is not valid JSON: {e}") from e
    else:
        decoded = value

    if decoded is None:
        return default()

    if not isinstance(decoded, expected_type):
        raise ValidationError(
            f"Field '{field_name}' must be a JSON {expected_type.__name__}, "
            f"got {type(decoded).__name__}"
        )

    return decoded


def _normalize_tags(value: Any) -> list:
    tags = normalize_json_field(value, "tags", list, list)
    if not all(isinstance(tag, str) for tag in tags):
        raise ValidationError("Field 'tags' must contain only strings")
    return list(tags)


def _normalize_version(value: Any) -> int:
    if value is None or value == "":
        return 1
    if isinstance(value, bool):
        raise ValidationError(f"Invalid version: {value!r}")
    try:
        version = int(value)
    except (TypeError, ValueError, OverflowError) as e:
        raise ValidationError(f"Invalid version: {value!r}") from e
    if version != value and not isinstance(value, str):
        raise ValidationError(f"Invalid version: {value!r}")
    if version < 1:
        raise ValidationError(f"Version must be positive, got {version}")
    return version


class EntryCodec:
    """Validates raw source rows and converts them to MemoryEntry objects."""

    def validate(self, row: Mapping[str, Any]) -> None:
        """
        Check that every required field is present and non-empty.

        Raises:
            ValidationError: If a required field is missing or empty
        """
        row_id = row.get("id")
        missing = [name for name in REQUIRED_FIELDS if not row.get(name)]
        if missing:
            raise ValidationError(f"Missing required fields: {missing}", row_id=row_id)

        for name in ("id", "agent_id", "session_id", "type", "content"):
            if not isinstance(row[name], str):
                raise ValidationError(
                    f"Field '{name}' must be a string, got {type(row[name]).__name__}",
                    row_id=row_id,
                )

    def convert(self, row: Mapping[str, Any]) -> MemoryEntry:
        """
        Convert a raw row into a MemoryEntry.

        Raises:
            ValidationError: If the row fails validation or a field cannot be
                normalized
        """
        self.validate(row)
        row_id = row["id"]

        try:
            try:
                timestamp = parse_timestamp(row["timestamp"])
            except (ValueError, OverflowError, OSError) as e:
                raise ValidationError(f"Invalid timestamp {row['timestamp']!r}: {e}") from e

            entry = MemoryEntry(
                id=row_id,
                agent_id=row["agent_id"],
                session_id=row["session_id"],
                type=row["type"],
                content=row["content"],
                timestamp=timestamp,
                context=normalize_json_field(row.get("context"), "context", dict, dict),
                tags=_normalize_tags(row.get("tags")),
                version=_normalize_version(row.get("version")),
            )

            parent_id = row.get("parent_id")
            if parent_id not in (None, ""):
                entry.parent_id = str(parent_id)

            metadata = row.get("metadata")
            if metadata not in (None, ""):
                entry.metadata = normalize_json_field(metadata, "metadata", dict, dict)

        except ValidationError as e:
            if e.row_id is None:
                e.row_id = row_id
            raise

        return entry


def entry_to_row(entry: MemoryEntry, iso_timestamp: bool = False) -> Tuple[Any, ...]:
    """
    Serialize an entry into a parameter tuple ordered as ``ENTRY_COLUMNS``.

    JSON columns are encoded as text. The timestamp stays a datetime unless
    ``iso_timestamp`` is set, in which case it is rendered with
    ``format_timestamp``.
    """
    return (
        entry.id,
        entry.agent_id,
        entry.session_id,
        entry.type,
        entry.content,
        json.dumps(entry.context, ensure_ascii=False),
        format_timestamp(entry.timestamp) if iso_timestamp else entry.timestamp,
        json.dumps(entry.tags, ensure_ascii=False),
        entry.version,
        entry.parent_id,
        json.dumps(entry.metadata, ensure_ascii=False) if entry.metadata is not None else None,
    )


def row_to_entry(row: Mapping[str, Any]) -> MemoryEntry:
    """Rebuild a MemoryEntry from a stored backend row."""
    entry = MemoryEntry(
        id=row["id"],
        agent_id=row["agent_id"],
        session_id=row["session_id"],
        type=row["type"],
        content=row["content"],
        timestamp=parse_timestamp(row["timestamp"]),
        context=normalize_json_field(row["context"], "context", dict, dict),
        tags=_normalize_tags(row["tags"]),
        version=row["version"],
    )

    if row["parent_id"]:
        entry.parent_id = row["parent_id"]

    if row["metadata"] is not None:
        entry.metadata = normalize_json_field(row["metadata"], "metadata", dict, dict)

    return entry


def row_to_dict(row: Any) -> Dict[str, Any]:
    """Turn a driver row (sqlite3.Row, asyncpg.Record or mapping) into a dict."""
    if isinstance(row, dict):
        return row
    return {key: row[key] for key in row.keys()}
