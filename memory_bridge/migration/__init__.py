"""
Migration of memory entries between storage backends.
"""

from .migration_engine import (
    MigrationEngine,
    MigrationError,
    MigrationState,
    NotInitializedError,
)
from .orchestrator import MigrationOrchestrator, VerificationFailedError, migrate_memory_data
from .source_reader import SourceReaderInterface, SqliteSourceReader
from .verifier import MigrationVerifier

__all__ = [
    "MigrationEngine",
    "MigrationError",
    "MigrationState",
    "NotInitializedError",
    "MigrationOrchestrator",
    "VerificationFailedError",
    "migrate_memory_data",
    "SourceReaderInterface",
    "SqliteSourceReader",
    "MigrationVerifier",
]
