import logging
from typing import Optional, Protocol

from card_checkout.channel import Subscription
from card_checkout.engine import AuthorizationEngine
from card_checkout.errors import CheckoutError
from card_checkout.relay import SessionRelay
from card_checkout.schemas import AuthorizationResult, OrderContext, Outcome, TokenizationEvent
from card_checkout.store import SessionStore
from card_checkout.tokenizer import GENERIC_FAILURE, TokenizerBridge

logger = logging.getLogger(__name__)


class CheckoutBackend(Protocol):
    def attach_token(self, session_id: str, token: str) -> None: ...

    def authorize(self, session_id: str) -> AuthorizationResult: ...

    def complete_order(self, session_id: str) -> None: ...


class LocalBackend:
    """Server side wired in-process: relay, engine and store."""

    def __init__(self, store: SessionStore, engine: AuthorizationEngine):
        self.store = store
        self.relay = SessionRelay(store)
        self.engine = engine

    def attach_token(self, session_id: str, token: str):
        self.relay.attach_token(session_id, token)

    def authorize(self, session_id: str) -> AuthorizationResult:
        return self.engine.authorize_session(session_id, OrderContext())

    def complete_order(self, session_id: str):
        logger.info("Order for session %s completed", session_id)


class CheckoutOrchestrator:
    """Turns one "Place order" click into at most one authorization."""

    def __init__(self, session_id: str, bridge: TokenizerBridge, backend: CheckoutBackend):
        self.session_id = session_id
        self.bridge = bridge
        self.backend = backend
        self.submitting = False
        self.error_message: Optional[str] = None
        self.result: Optional[AuthorizationResult] = None
        self.completed = False
        self._subscription: Optional[Subscription] = None

    @property
    def button_enabled(self) -> bool:
        return not self.submitting and not self.completed

    def place_order(self) -> bool:
        """Start an attempt. Returns False when the click was ignored."""
        if self.submitting or self.completed:
            return False
        self.submitting = True
        self.error_message = None
        self._subscription = self.bridge.on_token_received(self._on_token)
        try:
            self.bridge.request_submit()
        except CheckoutError as e:
            logger.warning("Could not start tokenization for %s: %s", self.session_id, e.message)
            self._fail(GENERIC_FAILURE)
        return True

    def abandon(self):
        """The shopper left the page; a late token must not charge them."""
        self._release()
        self.submitting = False

    def _release(self):
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    def _fail(self, message: str):
        self._release()
        self.error_message = message
        self.submitting = False

    def _on_token(self, event: TokenizationEvent):
        self._subscription = None
        if not self.submitting:
            return
        if not event.ok:
            self._fail(event.error or GENERIC_FAILURE)
            return

        try:
            self.backend.attach_token(self.session_id, event.token)
            result = self.backend.authorize(self.session_id)
        except CheckoutError as e:
            logger.warning("Checkout %s failed before authorization: %s", self.session_id, e.message)
            self._fail(e.message)
            return

        self.result = result
        if result.outcome != Outcome.CAPTURED:
            self._fail(result.error_message or "Payment failed")
            return

        try:
            self.backend.complete_order(self.session_id)
        except CheckoutError as e:
            # money is captured; keep the button disabled so nobody pays twice
            logger.error("Session %s captured as %s but order completion failed: %s",
                         self.session_id, result.gateway_ref, e.message)
            self.error_message = e.message
        self.completed = True
        self.submitting = False
