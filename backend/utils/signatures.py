import hashlib
import hmac


def checkout_payload(gateway_order_id: str, gateway_payment_id: str) -> str:
    return f"{gateway_order_id}|{gateway_payment_id}"


def compute_signature(payload: bytes | str, secret: str) -> str:
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes | str, provided_signature: str | None, secret: str | None) -> bool:
    """
    HMAC-SHA256 check used for checkout confirmations and webhooks.
    Fails closed: anything missing or malformed is simply False.
    """
    if not secret or not provided_signature or not isinstance(provided_signature, str):
        return False
    if not isinstance(payload, (bytes, str)):
        return False

    expected = compute_signature(payload, secret)
    try:
        return hmac.compare_digest(expected, provided_signature)
    except TypeError:
        # non-ascii signature strings
        return False
