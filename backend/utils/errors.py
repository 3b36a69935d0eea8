from fastapi import HTTPException, status


class LedgerError(HTTPException):
    """
    Base for business errors raised from services.
    Rendered by main.py as {"success": false, "message": ...}.
    """

    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Request failed"

    def __init__(self, detail: str | None = None):
        super().__init__(status_code=self.status_code, detail=detail or self.default_detail)


class ValidationError(LedgerError):
    default_detail = "Invalid request"


class InvalidAmount(ValidationError):
    default_detail = "Amount must be greater than zero"


class InvalidSignature(LedgerError):
    default_detail = "Invalid payment signature"


class InsufficientBalance(LedgerError):
    default_detail = "Insufficient wallet balance"


class Forbidden(LedgerError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Not allowed"


class NotFound(LedgerError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found"


class InvalidState(LedgerError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Operation not allowed in current state"


class GatewayError(LedgerError):
    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = "Payment gateway request failed"
