"""Wiring of store, collaborators and passes into the three named jobs."""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from newsrelay.config import get_db_path
from newsrelay.database import Database
from newsrelay.delivery import DeliveryEngine
from newsrelay.errors import ConfigError
from newsrelay.extractor import ContentExtractor
from newsrelay.feeds import FeedParser
from newsrelay.ingestion import IngestionCoordinator
from newsrelay.models import RetentionPolicy
from newsrelay.orchestrator import JobOrchestrator
from newsrelay.retention import RetentionSweeper
from newsrelay.summarizer import Summarizer
from newsrelay.transport import LinePushTransport, LoggingTransport, MessageTransport

logger = logging.getLogger(__name__)

INGESTION_JOB = "ingestion"
DELIVERY_JOB = "delivery"
RETENTION_JOB = "retention"
JOB_NAMES = (INGESTION_JOB, DELIVERY_JOB, RETENTION_JOB)


@dataclass
class Runtime:
    """Everything a running service owns."""

    db: Database
    coordinator: IngestionCoordinator
    engine: DeliveryEngine
    sweeper: RetentionSweeper
    orchestrator: JobOrchestrator

    def shutdown(self) -> None:
        """Cooperative shutdown: in-flight passes and enrichment finish first."""
        self.orchestrator.destroy_all(wait=True)
        self.coordinator.shutdown(wait_for_pending=True)
        self.db.close()


def build_transport(config: dict, dry_run: bool = False) -> MessageTransport:
    if dry_run:
        logger.info("Dry run: deliveries will be logged, not sent")
        return LoggingTransport()
    section = config["transport"]
    if not section["channel_access_token"]:
        raise ConfigError(
            "transport.channel_access_token (or LINE_CHANNEL_ACCESS_TOKEN) is not set; "
            "use --dry-run to log deliveries instead"
        )
    return LinePushTransport(
        channel_access_token=section["channel_access_token"],
        push_url=section["push_url"],
        request_timeout=section["request_timeout"],
        max_messages_per_push=section["max_messages_per_push"],
    )


def recorded(db: Database, name: str, run: Callable[[], Any]) -> Callable[[], Any]:
    """Wrap a pass so each invocation lands in the job_runs history."""

    def task():
        run_id = db.record_run_start(name)
        try:
            result = run()
        except Exception as e:
            db.record_run_failed(run_id, str(e))
            raise
        db.record_run_complete(run_id, result.to_dict())
        return result

    return task


def build_runtime(
    config: dict,
    db: Database | None = None,
    dry_run: bool = False,
    clock: Callable[[], datetime] | None = None,
    parser: FeedParser | None = None,
    extractor: ContentExtractor | None = None,
    summarizer: Summarizer | None = None,
    transport: MessageTransport | None = None,
    orchestrator: JobOrchestrator | None = None,
) -> Runtime:
    """Build all components from config and register the named jobs (not started)."""
    db = db or Database(get_db_path(config), clock=clock)
    ingestion = config["ingestion"]
    delivery = config["delivery"]
    policy = RetentionPolicy.from_config(config["retention"])

    coordinator = IngestionCoordinator(
        db,
        parser or FeedParser.from_config(config),
        extractor or ContentExtractor.from_config(config),
        summarizer or Summarizer.from_config(config),
        feed_workers=ingestion["feed_workers"],
        enrichment_workers=ingestion["enrichment_workers"],
        summary_level=ingestion["summary_level"],
        max_keywords=ingestion["max_keywords"],
        retry_unprocessed_limit=ingestion["retry_unprocessed_limit"],
        processing_timeout=policy.processing_timeout,
        clock=clock,
    )
    engine = DeliveryEngine(
        db,
        transport or build_transport(config, dry_run),
        lookback=timedelta(hours=delivery["lookback_hours"]),
        page_size=delivery["page_size"],
        window_minutes=delivery["window_minutes"],
        workers=delivery["workers"],
        retry_failed=delivery["retry_failed"],
        clock=clock,
    )
    sweeper = RetentionSweeper(db, policy)

    schedule = config["schedule"]
    orchestrator = orchestrator or JobOrchestrator(timezone=schedule["timezone"])
    orchestrator.schedule(INGESTION_JOB, schedule["ingestion"], recorded(db, INGESTION_JOB, coordinator.run_pass))
    orchestrator.schedule(DELIVERY_JOB, schedule["delivery"], recorded(db, DELIVERY_JOB, engine.run_pass))
    orchestrator.schedule(RETENTION_JOB, schedule["retention"], recorded(db, RETENTION_JOB, sweeper.run_pass))

    return Runtime(
        db=db,
        coordinator=coordinator,
        engine=engine,
        sweeper=sweeper,
        orchestrator=orchestrator,
    )
