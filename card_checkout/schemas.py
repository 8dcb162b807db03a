from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, model_validator


class SessionStatus(str, Enum):
    PENDING = "pending"
    AUTHORIZING = "authorizing"
    CAPTURED = "captured"
    ERROR = "error"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class Outcome(str, Enum):
    CAPTURED = "captured"
    ERROR = "error"


class SessionError(BaseModel):
    kind: str
    message: str


class CheckoutSession(BaseModel):
    """One in-progress payment attempt, as seen by the relay and the engine.

    ``data`` is the loosely shaped provider payload the storefront and the
    commerce platform write into; the top-level fields are the canonical
    shape. ``normalize`` reconciles the two.
    """

    session_id: str
    cart_id: Optional[str] = None
    amount: Optional[int] = None
    currency_code: Optional[str] = None
    token: Optional[str] = None
    status: SessionStatus = SessionStatus.PENDING
    gateway_ref: Optional[str] = None
    last_error: Optional[SessionError] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_tokenized(self) -> bool:
        return bool(self.token)


class OrderContext(BaseModel):
    """What the order system knows about the order at authorize time."""

    amount: Optional[int] = None
    currency_code: Optional[str] = None
    reference: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TokenizationEvent(BaseModel):
    token: Optional[str] = None
    raw_gateway_response: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return bool(self.token) and self.error is None


class AuthorizationResult(BaseModel):
    outcome: Outcome
    gateway_ref: Optional[str] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _gateway_ref_iff_captured(self):
        if (self.outcome == Outcome.CAPTURED) != bool(self.gateway_ref):
            raise ValueError("gateway_ref must be set exactly when outcome is captured")
        return self

    @classmethod
    def captured(cls, gateway_ref: str, data: dict) -> "AuthorizationResult":
        return cls(outcome=Outcome.CAPTURED, gateway_ref=gateway_ref, data=data)

    @classmethod
    def failed(cls, kind: str, message: str, data: dict) -> "AuthorizationResult":
        return cls(outcome=Outcome.ERROR, error_kind=kind, error_message=message, data=data)


# --- HTTP payloads ---

class CreateSessionRequest(BaseModel):
    cart_id: Optional[str] = None
    amount: int = Field(..., gt=0)
    currency: str = "usd"


class AttachTokenRequest(BaseModel):
    token: str


class AuthorizeRequest(BaseModel):
    amount: Optional[int] = None
    currency: Optional[str] = None
    reference: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RefundRequest(BaseModel):
    amount: int
