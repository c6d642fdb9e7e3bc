"""
Memory entry module for agent/session-scoped memory records.

This module defines the canonical entry stored by every memory backend and
the filter object accepted by backend queries.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class MemoryEntry:
    """
    A single memory record.

    Entries belong to an agent and a session, carry a JSON context, a tag
    list and optional free-form metadata, and may reference a parent entry.
    ``parent_id`` and ``metadata`` are None when absent; they are left out of
    ``to_dict`` instead of being written as null placeholders.
    """

    id: str
    agent_id: str
    session_id: str
    type: str
    content: str
    timestamp: datetime
    context: Dict[str, Any] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    version: int = 1
    parent_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @property
    def namespace(self) -> Optional[str]:
        """The ``metadata.namespace`` value, if any."""
        if self.metadata is None:
            return None
        return self.metadata.get("namespace")

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert the entry to a dictionary representation.

        Returns:
            Dictionary of entry fields with the timestamp in ISO-8601 form
        """
        data = {
            "id": self.id,
            "agent_id": self.agent_id,
            "session_id": self.session_id,
            "type": self.type,
            "content": self.content,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "tags": self.tags,
            "version": self.version,
        }

        if self.parent_id is not None:
            data["parent_id"] = self.parent_id

        if self.metadata is not None:
            data["metadata"] = self.metadata

        return data


@dataclass
class MemoryQuery:
    """
    Filter for backend queries.

    Every field is optional; a field left as None places no constraint on
    the result, and neither does a limit or offset of 0. Provided fields are
    AND-combined.
    """

    agent_id: Optional[str] = None
    session_id: Optional[str] = None
    type: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    search: Optional[str] = None
    tags: Optional[List[str]] = None
    namespace: Optional[str] = None
    limit: Optional[int] = None
    offset: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemoryQuery":
        """
        Create a MemoryQuery from a dictionary of filter fields.

        Raises:
            ValueError: If the dictionary contains an unknown filter field
        """
        unknown = set(data) - set(cls.__dataclass_fields__)
        if unknown:
            raise ValueError(f"Unknown query fields: {sorted(unknown)}")
        return cls(**data)
