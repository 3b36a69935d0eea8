from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from utils.errors import ValidationError

EVENT_PAYMENT_CAPTURED = "payment.captured"
EVENT_PAYMENT_FAILED = "payment.failed"
EVENT_REFUND_CREATED = "refund.created"

SUPPORTED_EVENTS = {EVENT_PAYMENT_CAPTURED, EVENT_PAYMENT_FAILED, EVENT_REFUND_CREATED}


class _Entity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    notes: dict = Field(default_factory=dict)

    @field_validator("notes", mode="before")
    @classmethod
    def _empty_notes(cls, value):
        # razorpay sends [] for empty notes
        if not value:
            return {}
        return value


class PaymentEntity(_Entity):
    id: str
    order_id: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    error_code: Optional[str] = None
    error_description: Optional[str] = None


class RefundEntity(_Entity):
    id: str
    payment_id: str
    amount: int


class _PaymentWrapper(BaseModel):
    model_config = ConfigDict(extra="ignore")
    entity: PaymentEntity


class _RefundWrapper(BaseModel):
    model_config = ConfigDict(extra="ignore")
    entity: RefundEntity


class _PaymentPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")
    payment: _PaymentWrapper


class _RefundPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")
    refund: _RefundWrapper


class PaymentCapturedEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")
    event: Literal["payment.captured"]
    payload: _PaymentPayload

    @property
    def payment(self) -> PaymentEntity:
        return self.payload.payment.entity

    @property
    def dedupe_key(self) -> str:
        return f"razorpay:{self.event}:{self.payment.id}"


class PaymentFailedEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")
    event: Literal["payment.failed"]
    payload: _PaymentPayload

    @property
    def payment(self) -> PaymentEntity:
        return self.payload.payment.entity

    @property
    def dedupe_key(self) -> str:
        return f"razorpay:{self.event}:{self.payment.id}"


class RefundCreatedEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")
    event: Literal["refund.created"]
    payload: _RefundPayload

    @property
    def refund(self) -> RefundEntity:
        return self.payload.refund.entity

    @property
    def dedupe_key(self) -> str:
        return f"razorpay:{self.event}:{self.refund.id}"


GatewayEvent = Annotated[
    Union[PaymentCapturedEvent, PaymentFailedEvent, RefundCreatedEvent],
    Field(discriminator="event"),
]

_event_adapter = TypeAdapter(GatewayEvent)


def parse_gateway_event(body) -> Optional[GatewayEvent]:
    """
    Returns None for events this service does not handle.
    Raises ValidationError for a handled event with a broken shape.
    """
    event = body.get("event") if isinstance(body, dict) else None
    if event not in SUPPORTED_EVENTS:
        return None

    try:
        return _event_adapter.validate_python(body)
    except PydanticValidationError:
        raise ValidationError(f"Malformed {event} event payload")
