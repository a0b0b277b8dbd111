"""Exception taxonomy for newsrelay."""


class NewsRelayError(Exception):
    """Base class for all newsrelay errors."""


class ConfigError(NewsRelayError):
    """Configuration is missing or invalid."""


class StoreError(NewsRelayError):
    """Content store invariant violated. Fatal to the current job invocation."""


class DuplicateFeed(StoreError):
    """A feed with the same source URL already exists."""

    def __init__(self, url: str):
        super().__init__(f"Feed already exists: {url}")
        self.url = url


class DuplicateDeliveryRecord(StoreError):
    """A ledger entry already exists for this (recipient, item) pair."""

    def __init__(self, recipient_id: int, item_id: int):
        super().__init__(
            f"Delivery record already exists for recipient {recipient_id}, item {item_id}"
        )
        self.recipient_id = recipient_id
        self.item_id = item_id


class FeedFetchError(NewsRelayError):
    """Feed could not be fetched or parsed."""


class FeedTimeout(FeedFetchError):
    """Feed fetch did not complete within the allowed time."""


class ExtractionError(NewsRelayError):
    """Page could not be fetched or has no usable body."""


class TransportError(NewsRelayError):
    """Outbound message delivery failed.

    delivered counts the leading messages of the batch that did go out.
    """

    def __init__(self, message: str, delivered: int = 0):
        super().__init__(message)
        self.delivered = delivered


class UnknownJobError(NewsRelayError, KeyError):
    """No job is registered under the requested name."""
