import logging
from typing import Callable, Optional

from card_checkout.schemas import TokenizationEvent

logger = logging.getLogger(__name__)

Handler = Callable[[TokenizationEvent], None]


class Subscription:
    def __init__(self, channel: "TokenChannel", handler: Handler):
        self._channel = channel
        self._handler = handler
        self.active = True

    def close(self):
        self.active = False
        if self._channel._current is self:
            self._channel._current = None

    def _deliver(self, event: TokenizationEvent) -> bool:
        if not self.active:
            return False
        # at most once: a subscription consumes a single event
        self.close()
        self._handler(event)
        return True


class TokenChannel:
    """Hands one tokenization result to the one consumer waiting for it.

    A new subscription replaces the previous one, and an event published
    while nobody listens is dropped rather than queued, so a late token can
    never drive an attempt that was abandoned.
    """

    def __init__(self):
        self._current: Optional[Subscription] = None

    def subscribe(self, handler: Handler) -> Subscription:
        if self._current is not None:
            self._current.close()
        self._current = Subscription(self, handler)
        return self._current

    @property
    def has_consumer(self) -> bool:
        return self._current is not None and self._current.active

    def publish(self, event: TokenizationEvent) -> bool:
        subscription = self._current
        if subscription is None or not subscription._deliver(event):
            logger.info("Dropped tokenization event with no active consumer")
            return False
        return True
