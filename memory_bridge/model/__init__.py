from .memory_entry import MemoryEntry, MemoryQuery
from .migration_stats import BatchStats, MigrationStats, VerificationResult

__all__ = ["MemoryEntry", "MemoryQuery", "MigrationStats", "BatchStats", "VerificationResult"]
