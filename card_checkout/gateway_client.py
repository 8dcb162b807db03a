import logging
from typing import Any, Dict, Optional

import httpx

from card_checkout.config import settings
from card_checkout.errors import GatewayConnectionError, GatewayRejected

logger = logging.getLogger(__name__)


def mask(value: Optional[str]) -> str:
    if not value:
        return "<none>"
    return "***" + value[-4:]


def _error_message(body: Any) -> Optional[str]:
    if isinstance(body, dict):
        return body.get("message") or body.get("msg")
    return None


class GatewayClient:
    """
    Thin FluidPay transport:
    - POST /transaction               -> sale (authorize + capture)
    - POST /transaction/{id}/refund   -> refund
    - POST /transaction/{id}/void     -> void
    The secret key goes in the Authorization header as-is (no Bearer prefix).
    """

    def __init__(self, base_url: str, secret_key: str, timeout: float = 30.0,
                 transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key
        self.timeout = timeout
        self._client = httpx.Client(timeout=timeout, transport=transport)

    @classmethod
    def from_settings(cls, transport: Optional[httpx.BaseTransport] = None) -> "GatewayClient":
        settings.require_gateway()
        return cls(settings.gateway_base_url, settings.gateway_secret_key,
                   timeout=settings.gateway_timeout, transport=transport)

    def close(self):
        self._client.close()

    # ----------------- helpers -----------------
    def _post_json(self, path: str, json_body: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json", "Authorization": self.secret_key}
        try:
            r = self._client.post(f"{self.base_url}{path}", json=json_body, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning("FluidPay POST %s timed out after %ss", path, self.timeout)
            raise GatewayConnectionError(f"FluidPay request timed out: {e}") from e
        except httpx.HTTPError as e:
            logger.warning("FluidPay POST %s failed: %s", path, e)
            raise GatewayConnectionError(f"FluidPay unreachable: {e}") from e

        try:
            data = r.json()
        except ValueError:
            data = {"raw": r.text}

        logger.info("FluidPay POST %s -> %s", path, r.status_code)
        if r.status_code >= 400:
            raise GatewayRejected(_error_message(data) or f"FluidPay request failed ({r.status_code})",
                                  status=r.status_code, body=data)
        # FluidPay can answer 200 with an application-level failure
        if isinstance(data, dict) and str(data.get("status", "success")).lower() not in ("success", "ok"):
            raise GatewayRejected(_error_message(data) or "FluidPay request failed",
                                  status=r.status_code, body=data)
        return data

    # ----------------- API -----------------
    def sale(self, *, token: str, amount: int, currency: str, reference: Optional[str] = None,
             vault: bool = True) -> Dict[str, Any]:
        payload = {
            "type": "sale",
            "amount": int(amount),
            "currency": currency,
            "payment_method": {"token": token},
            "vault_payment_method": vault,
        }
        if reference:
            payload["reference"] = reference
        logger.info("FluidPay sale %s %s token=%s ref=%s", amount, currency, mask(token), reference)
        return self._post_json("/transaction", payload)

    def refund(self, transaction_id: str, amount: int) -> Dict[str, Any]:
        return self._post_json(f"/transaction/{transaction_id}/refund", {"amount": int(amount)})

    def void(self, transaction_id: str) -> Dict[str, Any]:
        return self._post_json(f"/transaction/{transaction_id}/void", {})
