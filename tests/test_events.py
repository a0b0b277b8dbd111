"""Tests for inbound recipient events."""
import tempfile
from pathlib import Path

import pytest

from newsrelay.database import Database
from newsrelay.events import (
    DEFAULT_TEXT,
    HELP_TEXT,
    WELCOME_TEXT,
    FollowEvent,
    MessageEvent,
    UnfollowEvent,
    handle_event,
    parse_event,
)


def test_parse_event_types():
    assert parse_event({"type": "follow", "source": {"userId": "U1"}}) == FollowEvent("U1")
    assert parse_event({"type": "unfollow", "source": {"userId": "U1"}}) == UnfollowEvent("U1")
    assert parse_event({
        "type": "message",
        "source": {"userId": "U1"},
        "message": {"type": "text", "text": "hi"},
    }) == MessageEvent("U1", "hi")


def test_parse_event_ignores_unsupported():
    assert parse_event({"type": "message", "source": {"userId": "U1"}, "message": {"type": "sticker"}}) is None
    assert parse_event({"type": "postback", "source": {"userId": "U1"}}) is None
    assert parse_event({"type": "follow", "source": {}}) is None


def test_follow_creates_recipient_and_welcomes():
    with tempfile.TemporaryDirectory() as tmpdir:
        db = Database(Path(tmpdir) / "test.db")

        replies = handle_event(FollowEvent("U1", "Alice"), db)

        assert [m.text for m in replies] == [WELCOME_TEXT]
        recipient = db.get_recipient_by_external_id("U1")
        assert recipient.display_name == "Alice"
        assert recipient.active is True


def test_unfollow_soft_deletes_and_refollow_reactivates():
    """Unfollow keeps the recipient row; a later follow reactivates it."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db = Database(Path(tmpdir) / "test.db")
        handle_event(FollowEvent("U1"), db)

        assert handle_event(UnfollowEvent("U1"), db) == []
        recipient = db.get_recipient_by_external_id("U1")
        assert recipient is not None
        assert recipient.active is False
        assert db.list_active_recipients() == []

        handle_event(FollowEvent("U1"), db)
        assert db.get_recipient_by_external_id("U1").active is True
        assert len(db.list_recipients()) == 1


def test_message_replies():
    with tempfile.TemporaryDirectory() as tmpdir:
        db = Database(Path(tmpdir) / "test.db")

        assert [m.text for m in handle_event(MessageEvent("U1", "Help please"), db)] == [HELP_TEXT]
        assert [m.text for m in handle_event(MessageEvent("U1", "hello"), db)] == [DEFAULT_TEXT]
        # First contact by message registers the recipient too
        assert db.get_recipient_by_external_id("U1") is not None


def test_handle_unknown_event_raises():
    with tempfile.TemporaryDirectory() as tmpdir:
        db = Database(Path(tmpdir) / "test.db")

        with pytest.raises(TypeError):
            handle_event(object(), db)
