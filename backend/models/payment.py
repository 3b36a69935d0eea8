from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class PaymentStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"
    REFUNDED = "Refunded"
    CANCELLED = "Cancelled"


# A capture may claim a payment only from these states
CAPTURABLE_STATUSES = [PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value]


class CheckoutOrderPayload(BaseModel):
    order_id: str = Field(..., min_length=1)


class VerifyPaymentPayload(BaseModel):
    order_id: str = Field(..., min_length=1)
    gateway_order_id: str = Field(..., min_length=1)
    gateway_payment_id: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1)


class RefundPayload(BaseModel):
    amount: Optional[float] = None
    reason: Optional[str] = None
