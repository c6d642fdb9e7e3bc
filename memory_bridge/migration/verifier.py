"""
Post-migration consistency checks.
"""

import logging
from typing import Optional

from memory_bridge.model.migration_stats import VerificationResult
from memory_bridge.migration.source_reader import SourceReaderInterface
from memory_bridge.storage.interfaces.memory_backend_interface import MemoryBackendInterface

logger = logging.getLogger(__name__)

SAMPLE_SIZE = 5

# Fields that must be identical between a sampled source row and its target entry
SAMPLE_FIELDS = ("agent_id", "session_id", "content")


class MigrationVerifier:
    """Compares a migration source with its target after a run."""

    def __init__(
        self,
        source: SourceReaderInterface,
        target: MemoryBackendInterface,
        sample_size: int = SAMPLE_SIZE,
    ):
        self.source = source
        self.target = target
        self.sample_size = sample_size

    async def verify_migration(self) -> VerificationResult:
        """
        Check row counts and a sample of the earliest source rows.

        Never raises. A count that cannot be taken is reported as None and
        fails the count match; any error while sampling fails the sample check.
        """
        source_count = await self._count("source", self.source.count)
        target_count = await self._count("target", self.target.count_entries)

        result = VerificationResult(
            source_count=source_count,
            target_count=target_count,
            match=source_count is not None and source_count == target_count,
            sample_verification=await self.verify_sample(),
        )

        if not result.match:
            logger.error(
                f"Entry count mismatch: source={source_count}, target={target_count}"
            )
        logger.info(f"Migration verification: {result.to_dict()}")
        return result

    async def verify_sample(self) -> bool:
        """Return True if every sampled source row exists unchanged in the target."""
        try:
            rows = await self.source.page("timestamp", self.sample_size, 0)
            if not rows:
                return True

            for row in rows:
                entry = await self.target.retrieve(row["id"])
                if entry is None:
                    logger.error(f"Entry {row['id']} not found in target")
                    return False

                for field_name in SAMPLE_FIELDS:
                    if getattr(entry, field_name) != row.get(field_name):
                        logger.error(f"Entry {row['id']} {field_name} mismatch")
                        return False

            return True

        except Exception as e:
            logger.error(f"Sample verification failed: {e}")
            return False

    async def _count(self, side: str, count_fn) -> Optional[int]:
        try:
            return await count_fn()
        except Exception as e:
            logger.error(f"Failed to count {side} entries: {e}")
            return None
