from functools import lru_cache

from fastapi import APIRouter, Depends, HTTPException

from card_checkout.auth import verify_token
from card_checkout.config import settings
from card_checkout.engine import AuthorizationEngine
from card_checkout.errors import (
    ConfigError,
    InvalidAmountError,
    NoChargeToRefundError,
    NotFoundError,
    ValidationError,
)
from card_checkout.gateway_client import GatewayClient
from card_checkout.relay import SessionRelay
from card_checkout.schemas import (
    AttachTokenRequest,
    AuthorizeRequest,
    CreateSessionRequest,
    OrderContext,
    RefundRequest,
    SessionStatus,
)
from card_checkout.store import SessionStore

router = APIRouter()

store = SessionStore()


@lru_cache
def get_engine() -> AuthorizationEngine:
    try:
        gateway = GatewayClient.from_settings()
    except ConfigError as e:
        raise HTTPException(status_code=503, detail=e.message)
    return AuthorizationEngine(gateway, store, vault_payment_method=settings.vault_payment_method)


def _load(session_id: str):
    try:
        return store.get(session_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)


@router.get("/tokenizer/config")
def tokenizer_config():
    return settings.tokenizer_config()


@router.post("/checkout/sessions")
def create_session(
    request: CreateSessionRequest,
    engine: AuthorizationEngine = Depends(get_engine),
    auth=Depends(verify_token)
):
    context = OrderContext(amount=request.amount, currency_code=request.currency)
    session = store.create(engine.initiate(context, cart_id=request.cart_id))
    return session.model_dump(mode="json")


@router.get("/checkout/sessions/{session_id}")
def get_session(session_id: str, auth=Depends(verify_token)):
    return _load(session_id).model_dump(mode="json")


@router.post("/checkout/sessions/{session_id}/token")
def attach_token(session_id: str, request: AttachTokenRequest, auth=Depends(verify_token)):
    try:
        session = SessionRelay(store).attach_token(session_id, request.token)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.message)
    return {"session_id": session.session_id, "status": session.status.value}


@router.post("/checkout/sessions/{session_id}/authorize")
def authorize(
    session_id: str,
    request: AuthorizeRequest = None,
    engine: AuthorizationEngine = Depends(get_engine),
    auth=Depends(verify_token)
):
    request = request or AuthorizeRequest()
    context = OrderContext(
        amount=request.amount,
        currency_code=request.currency,
        reference=request.reference,
        metadata=request.metadata,
    )
    try:
        result = engine.authorize_session(session_id, context)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    return result.model_dump(mode="json", exclude={"data"})


@router.post("/checkout/sessions/{session_id}/capture")
def capture(session_id: str, engine: AuthorizationEngine = Depends(get_engine), auth=Depends(verify_token)):
    session = engine.capture(_load(session_id))
    return session.model_dump(mode="json")


@router.post("/checkout/sessions/{session_id}/cancel")
def cancel(session_id: str, engine: AuthorizationEngine = Depends(get_engine), auth=Depends(verify_token)):
    session = _load(session_id)
    if session.status in (SessionStatus.CANCELLED, SessionStatus.REFUNDED):
        return {"message": "Nothing to cancel", "status": session.status.value}
    session = store.save(engine.cancel(session))
    return {"status": session.status.value}


@router.post("/checkout/sessions/{session_id}/refund")
def refund(
    session_id: str,
    request: RefundRequest,
    engine: AuthorizationEngine = Depends(get_engine),
    auth=Depends(verify_token)
):
    try:
        session = engine.refund(_load(session_id), request.amount)
    except NoChargeToRefundError as e:
        raise HTTPException(status_code=409, detail=e.message)
    except InvalidAmountError as e:
        raise HTTPException(status_code=422, detail=e.message)
    session = store.save(session)
    return {"status": session.status.value, "refunds": session.data.get("refunds", [])}


@router.delete("/checkout/sessions/{session_id}")
def delete_session(session_id: str, engine: AuthorizationEngine = Depends(get_engine), auth=Depends(verify_token)):
    data = engine.delete(_load(session_id))
    store.delete(session_id)
    return data
