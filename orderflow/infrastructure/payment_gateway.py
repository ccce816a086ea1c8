"""
HTTP client for the payment gateway (PayOS-style API).

Requests and webhooks are authenticated with an HMAC-SHA256 over the
payload fields sorted by key and joined as ``k=v&k=v``.
"""

import hashlib
import hmac
import json
import random
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

import httpx

from orderflow.core_settings import Settings
from orderflow.domain.errors import PaymentGatewayError, PaymentGatewayTimeout
from shared.core import get_logger

logger = get_logger(__name__)

SUCCESS_CODE = "00"
# The gateway rejects descriptions longer than this
MAX_DESCRIPTION_LENGTH = 9
LINK_SIGNATURE_FIELDS = ("amount", "cancelUrl", "description", "orderCode", "returnUrl")


def _field_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return str(value)


def canonical_string(data: Mapping[str, Any]) -> str:
    return "&".join(f"{key}={_field_value(data[key])}" for key in sorted(data))


def create_signature(data: Mapping[str, Any], checksum_key: str) -> str:
    return hmac.new(
        checksum_key.encode("utf-8"), canonical_string(data).encode("utf-8"), hashlib.sha256
    ).hexdigest()


def generate_gateway_order_code() -> int:
    """Last nine digits of the millisecond clock plus three random digits."""
    millis = str(int(time.time() * 1000))[-9:]
    return int(f"{millis}{random.randint(0, 999):03d}")


@dataclass
class PaymentLink:
    gateway_order_code: int
    payment_link_id: Optional[str]
    checkout_url: Optional[str]
    qr_code: Optional[str]
    status: Optional[str] = None


class PaymentGatewayClient:
    def __init__(self, settings: Settings, transport: Optional[httpx.BaseTransport] = None):
        self.settings = settings
        self.transport = transport

    @property
    def configured(self) -> bool:
        s = self.settings
        return bool(s.GATEWAY_CLIENT_ID and s.GATEWAY_API_KEY and s.GATEWAY_CHECKSUM_KEY)

    def config_status(self) -> Dict[str, Any]:
        s = self.settings
        return {
            "configured": self.configured,
            "has_client_id": bool(s.GATEWAY_CLIENT_ID),
            "has_api_key": bool(s.GATEWAY_API_KEY),
            "has_checksum_key": bool(s.GATEWAY_CHECKSUM_KEY),
            "base_url": s.GATEWAY_BASE_URL,
            "return_url": s.GATEWAY_RETURN_URL or f"{s.FRONTEND_URL}/payment/success",
            "cancel_url": s.GATEWAY_CANCEL_URL or f"{s.FRONTEND_URL}/payment/cancel",
        }

    def sign(self, data: Mapping[str, Any]) -> str:
        if not self.settings.GATEWAY_CHECKSUM_KEY:
            raise PaymentGatewayError("GATEWAY_CHECKSUM_KEY is not configured")
        return create_signature(data, self.settings.GATEWAY_CHECKSUM_KEY)

    def verify_signature(self, data: Mapping[str, Any], signature: Optional[str]) -> bool:
        if not signature or not self.settings.GATEWAY_CHECKSUM_KEY:
            return False
        expected = create_signature(data, self.settings.GATEWAY_CHECKSUM_KEY)
        return hmac.compare_digest(expected, str(signature).lower())

    def _request(self, method: str, path: str, payload: Optional[dict] = None) -> Dict[str, Any]:
        if not self.configured:
            raise PaymentGatewayError("Payment gateway credentials are not configured")
        headers = {
            "x-client-id": self.settings.GATEWAY_CLIENT_ID,
            "x-api-key": self.settings.GATEWAY_API_KEY,
        }
        try:
            with httpx.Client(base_url=self.settings.GATEWAY_BASE_URL,
                              timeout=self.settings.GATEWAY_TIMEOUT_SECONDS,
                              transport=self.transport) as client:
                r = client.request(method, path, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise PaymentGatewayTimeout(f"{method} {path} timed out") from e
        except httpx.HTTPError as e:
            raise PaymentGatewayError(f"{method} {path} failed: {e}") from e

        try:
            body = r.json()
        except ValueError as e:
            raise PaymentGatewayError(f"{method} {path} returned non-JSON ({r.status_code})") from e
        if r.status_code >= 400 or body.get("code") != SUCCESS_CODE:
            raise PaymentGatewayError(
                f"{method} {path} rejected: {body.get('code')} {body.get('desc') or r.status_code}"
            )
        return body.get("data") or {}

    def create_payment_link(
        self,
        amount: int,
        description: str,
        items: List[Dict[str, Any]],
        buyer_name: Optional[str] = None,
        buyer_email: Optional[str] = None,
        buyer_phone: Optional[str] = None,
        gateway_order_code: Optional[int] = None,
    ) -> PaymentLink:
        config = self.config_status()
        code = gateway_order_code or generate_gateway_order_code()
        request = {
            "orderCode": code,
            "amount": int(amount),
            "description": description[:MAX_DESCRIPTION_LENGTH],
            "returnUrl": config["return_url"],
            "cancelUrl": config["cancel_url"],
        }
        request["signature"] = self.sign({k: request[k] for k in LINK_SIGNATURE_FIELDS})
        request["items"] = items
        for key, value in (("buyerName", buyer_name), ("buyerEmail", buyer_email), ("buyerPhone", buyer_phone)):
            if value:
                request[key] = value

        data = self._request("POST", "/v2/payment-requests", request)
        logger.info(
            "Payment link created",
            extra={'extra_fields': {'gateway_order_code': code, 'amount': amount}}
        )
        return PaymentLink(
            gateway_order_code=int(data.get("orderCode") or code),
            payment_link_id=data.get("paymentLinkId"),
            checkout_url=data.get("checkoutUrl"),
            qr_code=data.get("qrCode"),
            status=data.get("status"),
        )

    def get_payment_info(self, reference: Any) -> Dict[str, Any]:
        """``reference`` is the payment link id or the gateway order code."""
        return self._request("GET", f"/v2/payment-requests/{reference}")

    def cancel_payment_link(self, reference: Any, reason: Optional[str] = None) -> Dict[str, Any]:
        payload = {"cancellationReason": reason} if reason else None
        return self._request("POST", f"/v2/payment-requests/{reference}/cancel", payload)
