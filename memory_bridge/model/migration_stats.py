"""
Result types produced by a migration run.
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional


@dataclass
class MigrationStats:
    """Counters for one migration run. ``duration`` is in milliseconds."""

    total_entries: int = 0
    migrated_entries: int = 0
    skipped_entries: int = 0
    errors: int = 0
    duration: float = 0.0

    def add_batch(self, batch: "BatchStats") -> None:
        self.migrated_entries += batch.migrated_entries
        self.skipped_entries += batch.skipped_entries
        self.errors += batch.errors

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BatchStats:
    """Counters for a single batch."""

    migrated_entries: int = 0
    skipped_entries: int = 0
    errors: int = 0


@dataclass
class VerificationResult:
    """Outcome of a post-migration consistency check."""

    source_count: Optional[int]
    target_count: Optional[int]
    match: bool
    sample_verification: bool

    @property
    def passed(self) -> bool:
        return self.match and self.sample_verification

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
