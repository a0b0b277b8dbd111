"""End-to-end: ingest, enrich, deliver, and deliver again through the named jobs."""
import copy
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock

from newsrelay.config import DEFAULTS
from newsrelay.database import Database
from newsrelay.errors import ExtractionError
from newsrelay.extractor import ExtractedContent
from newsrelay.jobs import DELIVERY_JOB, INGESTION_JOB, RETENTION_JOB, build_runtime
from newsrelay.models import RawItem
from newsrelay.summarizer import Summarizer

# 08:10 in Asia/Tokyo
NOW = datetime(2026, 3, 10, 23, 10, tzinfo=timezone.utc)
ARTICLE = "Researchers unveiled a robot that folds laundry. It folds a shirt in under a minute. " * 3


def _clock():
    return NOW


def _runtime(db, parser, extractor, transport):
    return build_runtime(
        copy.deepcopy(DEFAULTS),
        db=db,
        clock=_clock,
        parser=parser,
        extractor=extractor,
        summarizer=Summarizer(),
        transport=transport,
    )


def test_ingest_then_deliver_once():
    """Only enriched items are delivered, and each only once."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db = Database(Path(tmpdir) / "test.db", clock=_clock)
        feed = db.upsert_feed("F", "https://ex.com/rss")
        recipient, _ = db.get_or_create_recipient("R")
        db.subscribe(recipient.id, feed.id)

        parser = MagicMock()
        parser.parse.return_value = [
            RawItem(title="Item A", url="https://ex.com/a", published_at=NOW),
            RawItem(title="Item B", url="https://ex.com/b", published_at=NOW),
        ]

        def extract(url):
            if url.endswith("/b"):
                raise ExtractionError("page timed out")
            return ExtractedContent(title="Item A", body=ARTICLE, author=None, publish_date=None)

        extractor = MagicMock()
        extractor.extract.side_effect = extract
        transport = MagicMock()
        runtime = _runtime(db, parser, extractor, transport)

        ingestion = runtime.orchestrator.trigger(INGESTION_JOB)
        runtime.coordinator.wait_for_enrichment(timeout=5)

        assert ingestion.items_inserted == 2
        a = db.get_item(1)
        b = db.get_item(2)
        assert a.processed is True
        assert a.summary.startswith("Researchers unveiled a robot")
        assert b.processed is False

        eligible = db.list_undelivered_eligible_items(recipient.id)
        assert [i.url for i in eligible] == ["https://ex.com/a"]

        first = runtime.orchestrator.trigger(DELIVERY_JOB)

        assert first.successful_deliveries == 1
        assert first.items_sent == 1
        transport.send_batch.assert_called_once()
        records = db.list_delivery_records(recipient.id)
        assert [(r.item_id, r.status) for r in records] == [(a.id, "sent")]

        second = runtime.orchestrator.trigger(DELIVERY_JOB)

        assert second.items_sent == 0
        assert transport.send_batch.call_count == 1
        assert len(db.list_delivery_records()) == 1

        runtime.shutdown()


def test_job_runs_are_recorded():
    with tempfile.TemporaryDirectory() as tmpdir:
        db = Database(Path(tmpdir) / "test.db", clock=_clock)
        parser = MagicMock()
        parser.parse.return_value = []
        runtime = _runtime(db, parser, MagicMock(), MagicMock())

        runtime.orchestrator.trigger(INGESTION_JOB)
        runtime.orchestrator.trigger(RETENTION_JOB)

        ingestion = db.get_last_run(INGESTION_JOB)
        assert ingestion["status"] == "completed"
        assert ingestion["result"]["feeds_attempted"] == 0
        retention = db.get_last_run(RETENTION_JOB)
        assert retention["status"] == "completed"
        assert "deleted" in retention["result"]
        assert db.get_last_run(DELIVERY_JOB) is None

        runtime.shutdown()


def test_failed_job_run_is_recorded():
    import pytest

    with tempfile.TemporaryDirectory() as tmpdir:
        db = Database(Path(tmpdir) / "test.db", clock=_clock)
        db.get_or_create_recipient("R")
        runtime = _runtime(db, MagicMock(), MagicMock(), MagicMock())
        runtime.engine.db = MagicMock()
        runtime.engine.db.list_active_recipients.side_effect = RuntimeError("store unavailable")

        with pytest.raises(RuntimeError):
            runtime.orchestrator.trigger(DELIVERY_JOB)

        run = db.get_last_run(DELIVERY_JOB)
        assert run["status"] == "failed"
        assert run["error"] == "store unavailable"

        runtime.shutdown()


def test_build_runtime_requires_token_unless_dry_run():
    import pytest

    from newsrelay.errors import ConfigError
    from newsrelay.jobs import build_transport
    from newsrelay.transport import LinePushTransport, LoggingTransport

    config = copy.deepcopy(DEFAULTS)

    with pytest.raises(ConfigError):
        build_transport(config)
    assert isinstance(build_transport(config, dry_run=True), LoggingTransport)

    config["transport"]["channel_access_token"] = "token"
    assert isinstance(build_transport(config), LinePushTransport)


def test_runtime_registers_named_jobs():
    with tempfile.TemporaryDirectory() as tmpdir:
        db = Database(Path(tmpdir) / "test.db", clock=_clock)
        runtime = _runtime(db, MagicMock(), MagicMock(), MagicMock())

        assert set(runtime.orchestrator.status()) == {INGESTION_JOB, DELIVERY_JOB, RETENTION_JOB}

        runtime.shutdown()
