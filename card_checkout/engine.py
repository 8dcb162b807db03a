import logging
import threading
import uuid
from collections import defaultdict
from typing import Any, Dict, Optional

from card_checkout.errors import (
    CheckoutError,
    GatewayConnectionError,
    GatewayRejected,
    InvalidAmountError,
    NoChargeToRefundError,
    ValidationError,
)
from card_checkout.gateway_client import GatewayClient
from card_checkout.normalize import normalize
from card_checkout.schemas import (
    AuthorizationResult,
    CheckoutSession,
    OrderContext,
    Outcome,
    SessionError,
    SessionStatus,
)
from card_checkout.store import SessionStore

logger = logging.getLogger(__name__)

CONNECTION_ERROR_MESSAGE = (
    "We could not reach the payment processor. Please try again; "
    "if you were charged, contact support before retrying."
)


class _KeyedLocks:
    """One lock per session id; entries are dropped when nobody holds them."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._users = defaultdict(int)

    def acquire(self, key: str):
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] += 1
        lock.acquire()

    def release(self, key: str):
        with self._guard:
            self._locks[key].release()
            self._users[key] -= 1
            if not self._users[key]:
                del self._locks[key]
                del self._users[key]


class AuthorizationEngine:
    """FluidPay payment provider.

    ``authorize`` charges the card (sale = authorize + capture) and is the
    only place a session can become ``captured``. Everything else is either
    a pass-through or best-effort against the gateway.
    """

    identifier = "fluidpay"

    def __init__(self, gateway: GatewayClient, store: Optional[SessionStore] = None,
                 vault_payment_method: bool = True):
        self.gateway = gateway
        self.store = store
        self.vault_payment_method = vault_payment_method
        self._locks = _KeyedLocks()

    # ----------------- provider contract -----------------
    def initiate(self, context: OrderContext, cart_id: str = None) -> CheckoutSession:
        """Open a payment session. Nothing is charged here."""
        currency = context.currency_code.upper() if context.currency_code else None
        return CheckoutSession(
            session_id=f"cs_{uuid.uuid4().hex}",
            cart_id=cart_id,
            amount=context.amount,
            currency_code=currency,
            status=SessionStatus.PENDING,
            data={"amount": context.amount, "currency_code": currency},
        )

    def authorize(self, session: CheckoutSession, context: OrderContext) -> AuthorizationResult:
        data = dict(session.data)
        try:
            inputs = normalize(session, context)
        except CheckoutError as e:
            logger.info("Session %s not charged: %s", session.session_id, e.message)
            return AuthorizationResult.failed(e.kind, e.message, {**data, "error": e.message})

        try:
            response = self.gateway.sale(
                token=inputs.token,
                amount=inputs.amount,
                currency=inputs.currency,
                reference=inputs.reference,
                vault=self.vault_payment_method,
            )
        except GatewayRejected as e:
            logger.info("FluidPay rejected session %s: %s", session.session_id, e.message)
            return AuthorizationResult.failed(
                e.kind, e.message, {**data, "error": e.message, "fluidpay_error": e.body}
            )
        except GatewayConnectionError as e:
            # the sale may or may not have landed; operators reconcile by reference
            logger.error("FluidPay unreachable for session %s (reference %s): %s",
                         session.session_id, inputs.reference, e.message)
            return AuthorizationResult.failed(
                e.kind, CONNECTION_ERROR_MESSAGE,
                {**data, "error": e.message, "fluidpay_reference": inputs.reference},
            )

        transaction = response.get("data") if isinstance(response.get("data"), dict) else {}
        transaction_id = transaction.get("id")
        if not transaction_id:
            message = response.get("msg") or response.get("message") or "FluidPay charge failed"
            logger.warning("FluidPay answered without a transaction id for session %s", session.session_id)
            return AuthorizationResult.failed(
                GatewayRejected.kind, message, {**data, "error": message, "fluidpay_error": response}
            )

        fluidpay = {
            "id": transaction_id,
            "status": transaction.get("status"),
            "reference": inputs.reference,
            "amount": inputs.amount,
            "currency": inputs.currency,
        }
        vault_token = (transaction.get("payment_method") or {}).get("token")
        if vault_token:
            fluidpay["vault_token"] = vault_token
        data.pop("error", None)
        data.pop("fluidpay_error", None)
        logger.info("Captured session %s as FluidPay transaction %s", session.session_id, transaction_id)
        return AuthorizationResult.captured(transaction_id, {**data, "fluidpay": fluidpay})

    def capture(self, session: CheckoutSession) -> CheckoutSession:
        # the sale in authorize already captured the funds
        return session

    def cancel(self, session: CheckoutSession) -> CheckoutSession:
        if session.gateway_ref:
            try:
                self.gateway.void(session.gateway_ref)
            except CheckoutError:
                logger.error("FluidPay void failed for %s; reconcile manually",
                             session.gateway_ref, exc_info=True)
        return session.model_copy(update={"status": SessionStatus.CANCELLED})

    void = cancel

    def refund(self, session: CheckoutSession, amount: int) -> CheckoutSession:
        if not session.gateway_ref:
            raise NoChargeToRefundError(f"Session {session.session_id} has no captured charge")
        if amount is None or amount <= 0:
            raise InvalidAmountError(f"Refund amount must be positive, got {amount!r}")

        data = dict(session.data)
        refunds = list(data.get("refunds") or [])
        entry: Dict[str, Any] = {"amount": amount}
        try:
            response = self.gateway.refund(session.gateway_ref, amount)
            refund_data = response.get("data") if isinstance(response.get("data"), dict) else {}
            entry["id"] = refund_data.get("id")
            entry["status"] = "succeeded"
        except CheckoutError as e:
            logger.error("FluidPay refund of %s on %s failed; reconcile manually",
                         amount, session.gateway_ref, exc_info=True)
            entry["status"] = "failed"
            entry["error"] = e.message
        refunds.append(entry)
        data["refunds"] = refunds
        return session.model_copy(update={"status": SessionStatus.REFUNDED, "data": data})

    def retrieve(self, session: CheckoutSession) -> CheckoutSession:
        return session

    def update(self, session: CheckoutSession, data: Dict[str, Any]) -> CheckoutSession:
        return session.model_copy(update={"data": {**session.data, **data}})

    def delete(self, session: CheckoutSession) -> Dict[str, Any]:
        return {}

    def get_status(self, session: CheckoutSession) -> SessionStatus:
        return session.status

    # ----------------- store-backed entry point -----------------
    def authorize_session(self, session_id: str, context: OrderContext) -> AuthorizationResult:
        """Authorize a stored session, at most one sale in flight per session."""
        if self.store is None:
            raise RuntimeError("authorize_session needs a SessionStore")

        self._locks.acquire(session_id)
        try:
            session = self.store.get(session_id)
            if session.status == SessionStatus.CAPTURED and session.gateway_ref:
                logger.info("Session %s already captured as %s", session_id, session.gateway_ref)
                return AuthorizationResult.captured(session.gateway_ref, session.data)
            if session.gateway_ref or session.status in (SessionStatus.CANCELLED, SessionStatus.REFUNDED):
                # the charge was voided or refunded; a new sale would lose its reference
                message = f"Session {session_id} is {session.status.value}; start a new checkout"
                logger.warning("Refusing to authorize %s session %s", session.status.value, session_id)
                return AuthorizationResult.failed(ValidationError.kind, message, session.data)

            self.store.save(session.model_copy(update={"status": SessionStatus.AUTHORIZING}))
            try:
                result = self.authorize(session, context)
            except Exception as e:
                # never leave the session stuck in authorizing
                self.store.save(session.model_copy(update={
                    "status": SessionStatus.ERROR,
                    "last_error": SessionError(kind="UnexpectedError", message=str(e)),
                }))
                raise
            self.store.save(apply_result(session, result))
            return result
        finally:
            self._locks.release(session_id)


def apply_result(session: CheckoutSession, result: AuthorizationResult) -> CheckoutSession:
    if result.outcome == Outcome.CAPTURED:
        return session.model_copy(update={
            "status": SessionStatus.CAPTURED,
            "gateway_ref": result.gateway_ref,
            "last_error": None,
            "data": result.data,
        })
    return session.model_copy(update={
        "status": SessionStatus.ERROR,
        "last_error": SessionError(kind=result.error_kind, message=result.error_message or ""),
        "data": result.data,
    })
