import logging

from card_checkout.errors import ValidationError
from card_checkout.gateway_client import mask
from card_checkout.schemas import CheckoutSession, SessionStatus
from card_checkout.store import SessionStore

logger = logging.getLogger(__name__)

CHARGED_STATUSES = (SessionStatus.CAPTURED, SessionStatus.CANCELLED, SessionStatus.REFUNDED)


class SessionRelay:
    """Carries a browser-issued token onto the stored checkout session."""

    def __init__(self, store: SessionStore):
        self.store = store

    def attach_token(self, session_id: str, token: str) -> CheckoutSession:
        token = (token or "").strip()
        if not token:
            raise ValidationError("Missing FluidPay token")

        session = self.store.get(session_id)
        if session.gateway_ref or session.status in CHARGED_STATUSES:
            raise ValidationError(f"Session {session_id} is already charged ({session.status.value})")

        # amount/currency stay as stored; only the token keys are replaced
        data = dict(session.data)
        data["token"] = token
        metadata = dict(data.get("metadata") or {})
        metadata["fluidpay_token"] = token
        data["metadata"] = metadata

        updates = {"token": token, "data": data}
        if session.status == SessionStatus.ERROR:
            # a fresh token re-enters the pending state for a new attempt
            updates.update(status=SessionStatus.PENDING, last_error=None)
        session = self.store.save(session.model_copy(update=updates))
        self.store.invalidate(session_id)
        logger.info("Attached token %s to session %s", mask(token), session_id)
        return session
