"""Tests for the delivery engine."""
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from newsrelay.database import Database
from newsrelay.errors import TransportError
from newsrelay.models import Item, RawItem

# 08:10 in Asia/Tokyo
NOW = datetime(2026, 3, 10, 23, 10, tzinfo=timezone.utc)


def _clock():
    return NOW


def _seed(db, recipients=("U1",), items=2):
    """One feed, `items` enriched items, and subscribed recipients at 08:00 JST."""
    feed = db.upsert_feed("Tech", "https://example.com/feed")
    for n in range(items):
        item = db.insert_item_if_new(
            RawItem(
                title=f"Article {n}",
                url=f"https://example.com/{n}",
                body="Body",
                published_at=NOW - timedelta(hours=n + 1),
            ),
            feed.id,
        )
        db.mark_item_enriched(item.id, f"Summary {n}.", ["ai"])
    for external_id in recipients:
        recipient, _ = db.get_or_create_recipient(external_id)
        db.subscribe(recipient.id, feed.id)
    return feed


def _engine(db, transport, **kwargs):
    from newsrelay.delivery import DeliveryEngine

    return DeliveryEngine(db, transport, clock=_clock, **kwargs)


def test_format_item_message():
    from newsrelay.delivery import format_item_message

    item = Item(
        id=1,
        feed_id=1,
        title="Robots learn to fold laundry",
        url="https://example.com/robots",
        body="",
        published_at=datetime(2026, 3, 10, 22, 5, tzinfo=timezone.utc),
        summary="Researchers built a robot.",
        keywords=["robots", "ai"],
        feed_name="Tech",
    )

    text = format_item_message(item, "Asia/Tokyo").text

    assert text.startswith("📄 Robots learn to fold laundry")
    assert "⏰ 03/11 07:05 | 📡 Tech" in text
    assert "📝 Researchers built a robot." in text
    assert "🏷️ robots, ai" in text
    assert "🔗 https://example.com/robots" in text


def test_format_item_message_without_keywords():
    from newsrelay.delivery import format_item_message

    item = Item(
        id=1,
        feed_id=None,
        title="Untitled",
        url="https://example.com/x",
        body="",
        published_at=NOW,
        summary=None,
    )

    text = format_item_message(item, "UTC").text

    assert "🏷️" not in text
    assert "📡 News" in text
    assert "No summary available" in text


def test_build_messages_header_first():
    from newsrelay.delivery import build_messages

    items = [
        Item(id=i, feed_id=1, title=f"T{i}", url=f"https://example.com/{i}", body="", published_at=NOW)
        for i in range(3)
    ]

    messages = build_messages(items, "UTC")

    assert len(messages) == 4
    assert "(3 items)" in messages[0].text
    assert messages[1].text.startswith("📄 T0")


def test_run_pass_sends_and_records_ledger():
    """In-window recipients get one batch; each item gets a 'sent' ledger row."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db = Database(Path(tmpdir) / "test.db", clock=_clock)
        _seed(db, items=2)
        transport = MagicMock()
        engine = _engine(db, transport)

        result = engine.run_pass()

        assert result.recipients_considered == 1
        assert result.successful_deliveries == 1
        assert result.failed_deliveries == 0
        assert result.items_sent == 2

        transport.send_batch.assert_called_once()
        external_id, messages = transport.send_batch.call_args[0]
        assert external_id == "U1"
        assert len(messages) == 3
        # Newest item first
        assert messages[1].text.startswith("📄 Article 0")

        records = db.list_delivery_records()
        assert {r.status for r in records} == {"sent"}
        assert len(records) == 2


def test_second_pass_is_idempotent():
    """Nothing already in the ledger is sent again."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db = Database(Path(tmpdir) / "test.db", clock=_clock)
        _seed(db)
        transport = MagicMock()
        engine = _engine(db, transport)

        engine.run_pass()
        second = engine.run_pass()

        assert transport.send_batch.call_count == 1
        assert second.successful_deliveries == 0
        assert second.items_sent == 0
        assert len(db.list_delivery_records()) == 2


def test_partial_failure_isolated_per_recipient():
    """One recipient's transport failure does not affect the others."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db = Database(Path(tmpdir) / "test.db", clock=_clock)
        _seed(db, recipients=("U1", "U2", "U3"), items=2)

        def send_batch(external_id, messages):
            if external_id == "U2":
                raise TransportError("HTTP 500")

        transport = MagicMock()
        transport.send_batch.side_effect = send_batch
        engine = _engine(db, transport)

        result = engine.run_pass()

        assert result.recipients_considered == 3
        assert result.successful_deliveries == 2
        assert result.failed_deliveries == 1
        assert result.items_sent == 4

        u2 = db.get_recipient_by_external_id("U2")
        failed = db.list_delivery_records(u2.id)
        assert len(failed) == 2
        assert all(r.status == "failed" for r in failed)
        assert "HTTP 500" in failed[0].error_detail

        u1 = db.get_recipient_by_external_id("U1")
        assert all(r.status == "sent" for r in db.list_delivery_records(u1.id))


def test_failed_items_not_retried_by_default():
    with tempfile.TemporaryDirectory() as tmpdir:
        db = Database(Path(tmpdir) / "test.db", clock=_clock)
        _seed(db)
        transport = MagicMock()
        transport.send_batch.side_effect = TransportError("HTTP 500")
        engine = _engine(db, transport)

        engine.run_pass()
        transport.send_batch.side_effect = None
        second = engine.run_pass()

        assert transport.send_batch.call_count == 1
        assert second.items_sent == 0


def test_failed_items_retried_when_enabled():
    """With retry_failed, a later pass resends and the row flips to 'sent'."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db = Database(Path(tmpdir) / "test.db", clock=_clock)
        _seed(db)
        transport = MagicMock()
        transport.send_batch.side_effect = TransportError("HTTP 500")
        engine = _engine(db, transport, retry_failed=True)

        engine.run_pass()
        transport.send_batch.side_effect = None
        second = engine.run_pass()

        assert second.successful_deliveries == 1
        assert second.items_sent == 2
        records = db.list_delivery_records()
        assert len(records) == 2
        assert all(r.status == "sent" for r in records)


def test_partial_push_failure_records_delivered_items_as_sent():
    """Items pushed before a failed request are never sent again on retry."""
    from newsrelay.transport import LinePushTransport

    with tempfile.TemporaryDirectory() as tmpdir:
        db = Database(Path(tmpdir) / "test.db", clock=_clock)
        _seed(db, items=5)
        session = MagicMock()
        session.headers = {}
        session.post.side_effect = [
            MagicMock(status_code=status, text="{}") for status in (200, 500, 200, 200)
        ]
        engine = _engine(
            db, LinePushTransport("token", session=session), page_size=5, retry_failed=True
        )

        first = engine.run_pass()
        second = engine.run_pass()

        assert first.failed_deliveries == 1
        assert first.items_sent == 4
        assert second.successful_deliveries == 1
        assert second.items_sent == 1

        pushed = [
            m["text"]
            for call in session.post.call_args_list
            for m in call[1]["json"]["messages"]
        ]
        for n in range(4):
            assert len([t for t in pushed if t.startswith(f"📄 Article {n}\n")]) == 1
        records = db.list_delivery_records()
        assert len(records) == 5
        assert all(r.status == "sent" for r in records)


def test_recipient_with_unknown_timezone_skipped():
    """A bad stored zone skips that recipient without counting a failure."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db = Database(Path(tmpdir) / "test.db", clock=_clock)
        _seed(db, recipients=("U1", "U2"))
        db.execute("UPDATE recipients SET timezone = 'Mars/Olympus' WHERE external_id = 'U2'")
        db.commit()
        transport = MagicMock()

        result = _engine(db, transport).run_pass()

        assert result.successful_deliveries == 1
        assert result.failed_deliveries == 0
        transport.send_batch.assert_called_once()
        u2 = db.get_recipient_by_external_id("U2")
        assert db.list_delivery_records(u2.id) == []


def test_out_of_window_recipient_skipped():
    """Recipients outside their window are neither sent to nor recorded."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db = Database(Path(tmpdir) / "test.db", clock=_clock)
        _seed(db, recipients=("U1", "U2"))
        db.update_recipient_settings("U2", delivery_time="20:00")
        transport = MagicMock()
        engine = _engine(db, transport)

        result = engine.run_pass()

        assert result.recipients_considered == 2
        assert result.successful_deliveries == 1
        assert result.failed_deliveries == 0
        u2 = db.get_recipient_by_external_id("U2")
        assert db.list_delivery_records(u2.id) == []


def test_inactive_recipient_not_considered():
    with tempfile.TemporaryDirectory() as tmpdir:
        db = Database(Path(tmpdir) / "test.db", clock=_clock)
        _seed(db, recipients=("U1",))
        db.update_recipient_settings("U1", active=False)
        transport = MagicMock()

        result = _engine(db, transport).run_pass()

        assert result.recipients_considered == 0
        transport.send_batch.assert_not_called()


def test_no_eligible_items_sends_nothing():
    with tempfile.TemporaryDirectory() as tmpdir:
        db = Database(Path(tmpdir) / "test.db", clock=_clock)
        _seed(db, items=0)
        transport = MagicMock()

        result = _engine(db, transport).run_pass()

        assert result.successful_deliveries == 0
        assert result.failed_deliveries == 0
        transport.send_batch.assert_not_called()


def test_page_size_limits_batch():
    with tempfile.TemporaryDirectory() as tmpdir:
        db = Database(Path(tmpdir) / "test.db", clock=_clock)
        _seed(db, items=7)
        transport = MagicMock()

        result = _engine(db, transport, page_size=5).run_pass()

        assert result.items_sent == 5
        _, messages = transport.send_batch.call_args[0]
        assert len(messages) == 6


def test_unexpected_error_counted_as_failure():
    """Non-transport errors for one recipient are counted, not raised."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db = Database(Path(tmpdir) / "test.db", clock=_clock)
        _seed(db)
        transport = MagicMock()
        transport.send_batch.side_effect = RuntimeError("bug")

        result = _engine(db, transport).run_pass()

        assert result.failed_deliveries == 1
        assert db.list_delivery_records() == []


def test_ledger_violation_propagates():
    """A duplicate ledger write aborts the pass."""
    from newsrelay.errors import DuplicateDeliveryRecord

    with tempfile.TemporaryDirectory() as tmpdir:
        db = Database(Path(tmpdir) / "test.db", clock=_clock)
        _seed(db, items=1)
        transport = MagicMock()
        engine = _engine(db, transport)

        # Another writer records the pair between selection and recording
        def send_batch(external_id, messages):
            recipient = db.get_recipient_by_external_id(external_id)
            db.record_delivery(recipient.id, 1, "sent")

        transport.send_batch.side_effect = send_batch

        with pytest.raises(DuplicateDeliveryRecord):
            engine.run_pass()
