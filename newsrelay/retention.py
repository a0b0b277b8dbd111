"""Retention sweep bounding store growth."""
import logging
import sqlite3
from dataclasses import asdict, dataclass, field

from newsrelay.database import Database
from newsrelay.models import RetentionPolicy

logger = logging.getLogger(__name__)


@dataclass
class RetentionResult:
    """Per-category deleted counts, per-category errors, and store stats after the sweep."""

    deleted: dict[str, int] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    stats: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


class RetentionSweeper:
    """Purge stale ledger rows and items. Category failures are reported, never raised."""

    def __init__(self, db: Database, policy: RetentionPolicy | None = None):
        self.db = db
        self.policy = policy or RetentionPolicy()

    def run_pass(self) -> RetentionResult:
        logger.info("Starting retention sweep")
        purge = self.db.purge_stale(self.policy)
        result = RetentionResult(deleted=purge.deleted, errors=purge.errors)

        for category, error in purge.errors.items():
            logger.error(f"✗ Retention purge of {category} failed: {error}")

        try:
            result.stats = self.db.get_stats()
        except sqlite3.Error as e:
            logger.warning(f"Could not collect store stats: {e}")

        logger.info(f"Retention sweep completed: deleted={result.deleted} stats={result.stats}")
        return result
