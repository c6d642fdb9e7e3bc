"""
End-to-end migration runs: initialize, migrate, verify, shut down.
"""

import logging
from typing import Any, Callable, Dict, Optional

from memory_bridge.model.migration_stats import MigrationStats, VerificationResult
from memory_bridge.migration.migration_engine import (
    DEFAULT_BATCH_SIZE,
    MigrationEngine,
    MigrationError,
)
from memory_bridge.migration.source_reader import SourceReaderInterface, SqliteSourceReader
from memory_bridge.migration.verifier import MigrationVerifier
from memory_bridge.storage.factory import create_storage_for_target
from memory_bridge.storage.interfaces.memory_backend_interface import MemoryBackendInterface

logger = logging.getLogger(__name__)


class VerificationFailedError(MigrationError):
    """Raised when the post-migration check finds the target out of step with the source."""

    def __init__(
        self,
        message: str,
        verification: VerificationResult,
        stats: Optional[MigrationStats] = None,
    ):
        super().__init__(message, stats)
        self.verification = verification


class MigrationOrchestrator:
    """
    Runs one complete migration against an owned source and target.

    Both sides are shut down when ``run`` returns or raises.
    """

    def __init__(
        self,
        source: SourceReaderInterface,
        target: MemoryBackendInterface,
        batch_size: int = DEFAULT_BATCH_SIZE,
        verify: bool = False,
        progress_callback: Optional[Callable[[int, int], Any]] = None,
    ):
        self.engine = MigrationEngine(
            source, target, batch_size=batch_size, progress_callback=progress_callback
        )
        self.verifier = MigrationVerifier(source, target)
        self.verify = verify

    async def run(self, dry_run: bool = False) -> MigrationStats:
        """
        Migrate and, when requested, verify.

        Verification is skipped for dry runs since nothing was written.

        Raises:
            InitializationError: If the source or target cannot be opened
            MigrationError: If the run aborts
            VerificationFailedError: If counts or sampled entries differ
        """
        try:
            await self.engine.initialize()
            stats = await self.engine.migrate(dry_run=dry_run)

            if self.verify and not dry_run:
                verification = await self.verifier.verify_migration()
                if not verification.passed:
                    logger.error(f"Migration verification failed: {verification.to_dict()}")
                    raise VerificationFailedError(
                        "Migration verification failed", verification, stats
                    )

            return stats
        finally:
            await self.engine.shutdown()


async def migrate_memory_data(
    source_path: str,
    target_connection: str,
    dry_run: bool = False,
    batch_size: int = DEFAULT_BATCH_SIZE,
    verify: bool = False,
    progress_callback: Optional[Callable[[int, int], Any]] = None,
    target_config: Optional[Dict[str, Any]] = None,
) -> MigrationStats:
    """
    Migrate a SQLite memory database into a target backend.

    Args:
        source_path: Path of the SQLite database holding ``memory_entries``
        target_connection: ``postgresql://`` URL, or a SQLite database path
        dry_run: Validate source rows without writing
        batch_size: Rows per batch
        verify: Check counts and a sample after a live run
        progress_callback: Called with (processed, total) after each batch
        target_config: Backend settings overriding the configured ones

    Returns:
        Counters for the run
    """
    source = SqliteSourceReader(source_path)
    target = create_storage_for_target(target_connection, target_config)

    orchestrator = MigrationOrchestrator(
        source,
        target,
        batch_size=batch_size,
        verify=verify,
        progress_callback=progress_callback,
    )
    return await orchestrator.run(dry_run=dry_run)
