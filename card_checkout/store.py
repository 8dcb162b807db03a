import logging
import uuid
from typing import Dict, Optional

from sqlalchemy.orm import sessionmaker

from card_checkout.database import SessionLocal
from card_checkout.errors import NotFoundError
from card_checkout.models import CheckoutSessionRecord
from card_checkout.schemas import CheckoutSession, SessionError, SessionStatus

logger = logging.getLogger(__name__)


def _to_domain(row: CheckoutSessionRecord) -> CheckoutSession:
    last_error = None
    if row.last_error_kind:
        last_error = SessionError(kind=row.last_error_kind, message=row.last_error_message or "")
    return CheckoutSession(
        session_id=row.id,
        cart_id=row.cart_id,
        amount=row.amount,
        currency_code=row.currency_code,
        token=row.token,
        status=SessionStatus(row.status),
        gateway_ref=row.gateway_ref,
        last_error=last_error,
        data=dict(row.data or {}),
    )


class SessionStore:
    """Durable checkout sessions with a read cache that every write drops."""

    def __init__(self, session_factory: sessionmaker = None):
        self._session_factory = session_factory
        self._cache: Dict[str, CheckoutSession] = {}

    def _db(self):
        # resolved at call time so tests can swap SessionLocal
        return (self._session_factory or SessionLocal)()

    def invalidate(self, session_id: str):
        self._cache.pop(session_id, None)

    def find(self, session_id: str) -> Optional[CheckoutSession]:
        if session_id in self._cache:
            return self._cache[session_id].model_copy(deep=True)
        db = self._db()
        try:
            row = db.get(CheckoutSessionRecord, session_id)
            if row is None:
                return None
            session = _to_domain(row)
        finally:
            db.close()
        self._cache[session_id] = session
        return session.model_copy(deep=True)

    def get(self, session_id: str) -> CheckoutSession:
        session = self.find(session_id)
        if session is None:
            raise NotFoundError(f"No checkout session {session_id}")
        return session

    def create(self, session: CheckoutSession = None, **fields) -> CheckoutSession:
        if session is None:
            session = CheckoutSession(session_id=fields.pop("session_id", None) or f"cs_{uuid.uuid4().hex}", **fields)
        db = self._db()
        try:
            db.add(CheckoutSessionRecord(id=session.session_id))
            db.commit()
        finally:
            db.close()
        return self.save(session)

    def save(self, session: CheckoutSession) -> CheckoutSession:
        db = self._db()
        try:
            row = db.get(CheckoutSessionRecord, session.session_id)
            if row is None:
                raise NotFoundError(f"No checkout session {session.session_id}")
            if row.gateway_ref and session.gateway_ref != row.gateway_ref:
                logger.warning("Refusing to overwrite gateway_ref of session %s", session.session_id)
                session = session.model_copy(update={"gateway_ref": row.gateway_ref})
            row.cart_id = session.cart_id
            row.amount = session.amount
            row.currency_code = session.currency_code
            row.token = session.token
            row.status = session.status.value
            row.gateway_ref = session.gateway_ref
            row.last_error_kind = session.last_error.kind if session.last_error else None
            row.last_error_message = session.last_error.message if session.last_error else None
            row.data = dict(session.data)
            db.commit()
        finally:
            db.close()
        self.invalidate(session.session_id)
        return session

    def delete(self, session_id: str):
        db = self._db()
        try:
            row = db.get(CheckoutSessionRecord, session_id)
            if row is not None:
                db.delete(row)
                db.commit()
        finally:
            db.close()
        self.invalidate(session_id)
