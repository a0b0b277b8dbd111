"""Inbound recipient events from the messaging platform."""
import logging
from dataclasses import dataclass

from newsrelay.database import Database
from newsrelay.models import Message

logger = logging.getLogger(__name__)

WELCOME_TEXT = (
    "Welcome to NewsRelay! 🎉\n\n"
    "You'll receive a digest of new articles from your subscribed feeds at your delivery time.\n\n"
    "Send \"help\" to see how it works."
)
HELP_TEXT = (
    "📖 NewsRelay help\n\n"
    "📰 Digests arrive once a day around your delivery time.\n"
    "💬 Commands\n"
    "• help - show this message"
)
DEFAULT_TEXT = "Hello! 👋\n\nSend \"help\" to see how NewsRelay works."


@dataclass(frozen=True)
class FollowEvent:
    external_id: str
    display_name: str | None = None


@dataclass(frozen=True)
class UnfollowEvent:
    external_id: str


@dataclass(frozen=True)
class MessageEvent:
    external_id: str
    text: str


InboundEvent = FollowEvent | UnfollowEvent | MessageEvent


def parse_event(payload: dict) -> InboundEvent | None:
    """Map one webhook event payload to an InboundEvent. Other types return None."""
    event_type = payload.get("type")
    external_id = (payload.get("source") or {}).get("userId")
    if not external_id:
        logger.info(f"Ignoring {event_type} event without a user id")
        return None

    if event_type == "follow":
        return FollowEvent(external_id=external_id, display_name=payload.get("displayName"))
    if event_type == "unfollow":
        return UnfollowEvent(external_id=external_id)
    if event_type == "message":
        message = payload.get("message") or {}
        if message.get("type") != "text":
            logger.debug(f"Ignoring non-text message from {external_id}")
            return None
        return MessageEvent(external_id=external_id, text=message.get("text", ""))

    logger.info(f"Unhandled event type: {event_type}")
    return None


def handle_event(event: InboundEvent, db: Database) -> list[Message]:
    """Apply an event to the store and return reply messages."""
    if isinstance(event, FollowEvent):
        recipient, created = db.get_or_create_recipient(event.external_id, event.display_name)
        if not created and not recipient.active:
            db.update_recipient_settings(event.external_id, active=True)
            logger.info(f"Recipient {event.external_id} re-followed, reactivated")
        elif created:
            logger.info(f"New recipient {event.external_id}")
        return [Message(text=WELCOME_TEXT)]

    if isinstance(event, UnfollowEvent):
        # Soft delete: the ledger keeps referencing the recipient
        if db.update_recipient_settings(event.external_id, active=False):
            logger.info(f"Recipient {event.external_id} unfollowed, deactivated")
        return []

    if isinstance(event, MessageEvent):
        db.get_or_create_recipient(event.external_id)
        if "help" in event.text.lower():
            return [Message(text=HELP_TEXT)]
        return [Message(text=DEFAULT_TEXT)]

    raise TypeError(f"Unknown event: {event!r}")
