"""Resolve token, amount and currency from the shapes upstream code writes.

The storefront and the commerce platform populate a session at different
points of checkout, so the same value can live in several places. The
lookup order lives here and nowhere else:

token
    1. ``session.token``
    2. ``session.data["token"]``
    3. ``metadata["fluidpay_token"]`` (order context, then session data)
    4. ``fluidpay_payment_method_id`` (legacy alias, metadata then data)

amount (integer minor units, never rescaled)
    1. ``order_context.amount``
    2. ``session.amount``
    3. ``session.data["amount"]``

currency
    1. ``order_context.currency_code``
    2. ``session.currency_code``
    3. ``session.data["currency_code"]``
"""
import math
from typing import Any, NamedTuple, Optional

from card_checkout.errors import InvalidAmountError, MissingTokenError
from card_checkout.schemas import CheckoutSession, OrderContext

TOKEN_METADATA_KEY = "fluidpay_token"
LEGACY_TOKEN_KEY = "fluidpay_payment_method_id"


class ChargeInputs(NamedTuple):
    token: str
    amount: int
    currency: str
    reference: str


def _first(*values) -> Optional[Any]:
    for value in values:
        if value not in (None, ""):
            return value
    return None


def _dict(value) -> dict:
    return value if isinstance(value, dict) else {}


def resolve_token(session: CheckoutSession, context: OrderContext) -> Optional[str]:
    data = session.data
    session_metadata = _dict(data.get("metadata"))
    return _first(
        session.token,
        data.get("token"),
        context.metadata.get(TOKEN_METADATA_KEY),
        session_metadata.get(TOKEN_METADATA_KEY),
        context.metadata.get(LEGACY_TOKEN_KEY),
        session_metadata.get(LEGACY_TOKEN_KEY),
        data.get(LEGACY_TOKEN_KEY),
    )


def _as_int(value) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number != int(number):
        # fractional minor units mean someone sent major units
        return None
    return int(number)


def resolve_amount(session: CheckoutSession, context: OrderContext) -> Optional[int]:
    return _first(
        _as_int(context.amount),
        _as_int(session.amount),
        _as_int(session.data.get("amount")),
    )


def resolve_currency(session: CheckoutSession, context: OrderContext) -> Optional[str]:
    currency = _first(context.currency_code, session.currency_code, session.data.get("currency_code"))
    return str(currency).strip().upper() if currency else None


def normalize(session: CheckoutSession, context: OrderContext) -> ChargeInputs:
    """Return the charge inputs or raise before anything reaches the gateway."""
    token = resolve_token(session, context)
    if not token:
        raise MissingTokenError("Missing FluidPay payment token")

    amount = resolve_amount(session, context)
    if amount is None or amount <= 0:
        raise InvalidAmountError(f"Amount must be a positive integer in minor units, got {amount!r}")

    currency = resolve_currency(session, context)
    if not currency:
        raise InvalidAmountError("Missing amount or currency")

    reference = context.reference or session.cart_id or session.session_id
    return ChargeInputs(token=str(token), amount=amount, currency=currency, reference=reference)
