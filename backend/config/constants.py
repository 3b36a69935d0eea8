# backend/config/constants.py

# -----------------------------
# GATEWAY
# -----------------------------
GATEWAY_NAME = "razorpay"
RAZORPAY_API_BASE = "https://api.razorpay.com/v1"
RECEIPT_MAX_LENGTH = 40               # razorpay receipt limit

# -----------------------------
# WALLET / WITHDRAWALS
# -----------------------------

WITHDRAWAL_METHODS = {"Bank Transfer", "UPI"}
TRANSACTIONS_PAGE_LIMIT_MAX = 100

# -----------------------------
# LOCKS / RETRIES
# -----------------------------

REFUND_LOCK_STALE_SECONDS = 60 * 10   # a refund call never takes this long
OUTBOX_STALE_SECONDS = 60 * 5         # reclaim abandoned "processing" tasks
OUTBOX_BACKOFF_BASE_SECONDS = 15
OUTBOX_BACKOFF_MAX_SECONDS = 60 * 60

# Outbox task kinds
TASK_COMMISSION_ACCRUAL = "commission_accrual"
