from enum import Enum
from typing import Optional

from pydantic import BaseModel


class TransactionType(str, Enum):
    CREDIT = "Credit"
    DEBIT = "Debit"


class TransactionStatus(str, Enum):
    COMPLETED = "Completed"


class WithdrawalStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    COMPLETED = "Completed"


# ==============================
# Ledger entry types (ENUM-LIKE)
# ==============================

ENTRY_COMMISSION_CREDIT = "COMMISSION_CREDIT"
ENTRY_COMMISSION_REVERSAL = "COMMISSION_REVERSAL"
ENTRY_WITHDRAWAL_DEBIT = "WITHDRAWAL_DEBIT"


class WithdrawalCreate(BaseModel):
    amount: float
    payment_method: str
    account_details: Optional[str] = None


class WithdrawalDecision(BaseModel):
    remarks: Optional[str] = None
    transaction_reference: Optional[str] = None
