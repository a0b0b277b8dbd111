"""Outbound message transports."""
import logging
from abc import ABC, abstractmethod
from typing import Sequence

import requests

from newsrelay.errors import TransportError
from newsrelay.models import Message

logger = logging.getLogger(__name__)

LINE_PUSH_URL = "https://api.line.me/v2/bot/message/push"


class MessageTransport(ABC):
    """Abstract base class for message transports."""

    @abstractmethod
    def send_batch(self, recipient_external_id: str, messages: Sequence[Message]) -> None:
        """
        Deliver messages to a recipient, in order.

        Args:
            recipient_external_id: The recipient's identity on the messaging platform.
            messages: Message payloads.

        Raises:
            TransportError: if any part of the batch could not be delivered; its
                delivered attribute says how many leading messages were sent.
        """


class LinePushTransport(MessageTransport):
    """LINE Messaging API push transport."""

    def __init__(
        self,
        channel_access_token: str,
        push_url: str = LINE_PUSH_URL,
        request_timeout: int = 10,
        max_messages_per_push: int = 5,
        session: requests.Session | None = None,
    ):
        self.push_url = push_url
        self.request_timeout = request_timeout
        self.max_messages_per_push = max_messages_per_push
        self._session = session or requests.Session()
        self._session.headers.update({
            "Authorization": f"Bearer {channel_access_token}",
            "Content-Type": "application/json",
        })

    def send_batch(self, recipient_external_id: str, messages: Sequence[Message]) -> None:
        # The push API accepts at most 5 messages per request
        step = self.max_messages_per_push
        sent = 0
        for start in range(0, len(messages), step):
            chunk = messages[start:start + step]
            payload = {
                "to": recipient_external_id,
                "messages": [m.to_payload() for m in chunk],
            }
            try:
                response = self._session.post(
                    self.push_url, json=payload, timeout=self.request_timeout
                )
            except requests.RequestException as e:
                raise TransportError(
                    f"Push to {recipient_external_id} failed: {e}", delivered=sent
                ) from e
            if response.status_code >= 300:
                raise TransportError(
                    f"Push to {recipient_external_id} rejected "
                    f"({response.status_code}): {response.text[:200]}",
                    delivered=sent,
                )
            sent += len(chunk)


class LoggingTransport(MessageTransport):
    """Dry-run transport that only logs what would be sent."""

    def send_batch(self, recipient_external_id: str, messages: Sequence[Message]) -> None:
        logger.info(f"[DRY RUN] Would send {len(messages)} messages to {recipient_external_id}")
        for message in messages:
            logger.debug(f"[DRY RUN] {message.text}")
