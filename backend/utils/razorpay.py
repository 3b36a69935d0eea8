import base64
import json
import logging
from urllib import request, error

from fastapi import Request

from config.constants import RAZORPAY_API_BASE
from utils.errors import GatewayError
from utils.signatures import checkout_payload, verify_signature

logger = logging.getLogger(__name__)


def _basic_auth_header(key_id: str, key_secret: str) -> str:
    token = f"{key_id}:{key_secret}".encode("utf-8")
    return "Basic " + base64.b64encode(token).decode("utf-8")


class RazorpayGateway:
    """
    Blocking Razorpay client. Call through asyncio.to_thread from handlers.
    """

    def __init__(
        self,
        *,
        key_id: str | None,
        key_secret: str | None,
        webhook_secret: str | None,
        currency: str = "INR",
        timeout: float = 15,
        api_base: str = RAZORPAY_API_BASE,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.currency = currency
        self.timeout = timeout
        self.api_base = api_base

    @property
    def publishable_key(self) -> str | None:
        return self.key_id

    def _require_config(self) -> tuple[str, str]:
        if not self.key_id or not self.key_secret:
            raise GatewayError("Razorpay keys are not configured")
        return self.key_id, self.key_secret

    def _request(self, method: str, path: str, payload: dict | None = None) -> dict:
        key_id, key_secret = self._require_config()

        req = request.Request(
            url=f"{self.api_base}{path}",
            data=json.dumps(payload).encode("utf-8") if payload is not None else None,
            headers={
                "Content-Type": "application/json",
                "Authorization": _basic_auth_header(key_id, key_secret),
            },
            method=method,
        )

        try:
            with request.urlopen(req, timeout=self.timeout) as resp:
                return json.loads(resp.read().decode("utf-8"))
        except error.HTTPError as e:
            details = e.read().decode("utf-8", errors="ignore")
            logger.warning("RAZORPAY_HTTP_ERROR path=%s status=%s body=%s", path, e.code, details)
            raise GatewayError(f"Razorpay request failed: {details}")
        except (error.URLError, TimeoutError, OSError, ValueError) as e:
            logger.warning("RAZORPAY_UNREACHABLE path=%s error=%s", path, e)
            raise GatewayError("Razorpay request failed")

    # -------------------------------
    # Orders / refunds
    # -------------------------------

    def create_order(self, *, amount_minor: int, receipt: str, notes: dict | None = None) -> dict:
        order = self._request(
            "POST",
            "/orders",
            {
                "amount": amount_minor,
                "currency": self.currency,
                "receipt": receipt,
                "notes": notes or {},
            },
        )
        if not order.get("id"):
            raise GatewayError("Razorpay order create failed")
        return order

    def refund_payment(self, *, gateway_payment_id: str, amount_minor: int, notes: dict | None = None) -> dict:
        refund = self._request(
            "POST",
            f"/payments/{gateway_payment_id}/refund",
            {"amount": amount_minor, "notes": notes or {}},
        )
        if not refund.get("id"):
            raise GatewayError("Razorpay refund failed")
        return refund

    # -------------------------------
    # Signatures
    # -------------------------------

    def verify_checkout_signature(
        self,
        *,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
    ) -> bool:
        return verify_signature(
            checkout_payload(gateway_order_id, gateway_payment_id),
            signature,
            self.key_secret,
        )

    def verify_webhook_signature(self, *, raw_body: bytes, signature: str | None) -> bool:
        return verify_signature(raw_body, signature, self.webhook_secret)


def get_gateway(http_request: Request) -> RazorpayGateway:
    return http_request.app.state.gateway
