from dotenv import load_dotenv
load_dotenv()

import asyncio
import logging

from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from database import LedgerStore, get_store

# ENV
from config.env import (
    CORS_ALLOWED_ORIGINS,
    ENV,
    GATEWAY_TIMEOUT_SECONDS,
    LOG_LEVEL,
    MONGO_DB_NAME,
    MONGO_TRANSACTIONS,
    MONGO_URI,
    PAYMENT_CURRENCY,
    RAZORPAY_KEY_ID,
    RAZORPAY_KEY_SECRET,
    RAZORPAY_WEBHOOK_SECRET,
    validate_production_env,
)

# ROUTES
from routes.admin import router as admin_router
from routes.payments import router as payments_router
from routes.wallet import router as wallet_router
from routes.webhooks import router as webhook_router

from utils.indexes import ensure_indexes
from utils.razorpay import RazorpayGateway

# WORKERS
from workers.commission_accrual_worker import commission_accrual_worker
from workers.commission_settlement_worker import commission_settlement_worker

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("ledger")

app = FastAPI(
    title="Payment & Commission Ledger API",
    version="1.0.0",
    docs_url=None if ENV == "production" else "/docs",
    redoc_url=None if ENV == "production" else "/redoc",
    openapi_url=None if ENV == "production" else "/openapi.json",
)

# -----------------------------
# CORS
# -----------------------------

allowed_origins = [origin.strip() for origin in CORS_ALLOWED_ORIGINS if origin.strip()]
if not allowed_origins:
    allowed_origins = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# -----------------------------
# ERRORS
# -----------------------------

@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": "Invalid request", "errors": jsonable_encoder(exc.errors())},
    )

# -----------------------------
# ROUTES
# -----------------------------

app.include_router(payments_router, prefix="/api")
app.include_router(webhook_router, prefix="/api")
app.include_router(wallet_router, prefix="/api")
app.include_router(admin_router, prefix="/api")

# -----------------------------
# HEALTH CHECKS
# -----------------------------

@app.get("/api/health")
async def health():
    return {"status": "ok"}


@app.get("/api/health/db")
async def health_db(store=Depends(get_store)):
    await store.ping()
    return {"status": "mongodb connected"}

# -----------------------------
# STARTUP / SHUTDOWN (ONE PLACE ONLY)
# -----------------------------

@app.on_event("startup")
async def startup():
    validate_production_env()
    logger.info("ENV: %s", ENV)

    store = LedgerStore.from_uri(MONGO_URI, MONGO_DB_NAME, transactions=MONGO_TRANSACTIONS)
    await ensure_indexes(store.db)

    app.state.store = store
    app.state.gateway = RazorpayGateway(
        key_id=RAZORPAY_KEY_ID,
        key_secret=RAZORPAY_KEY_SECRET,
        webhook_secret=RAZORPAY_WEBHOOK_SECRET,
        currency=PAYMENT_CURRENCY,
        timeout=GATEWAY_TIMEOUT_SECONDS,
    )
    app.state.workers = [
        asyncio.create_task(commission_accrual_worker(store)),
        asyncio.create_task(commission_settlement_worker(store)),
    ]


@app.on_event("shutdown")
async def shutdown():
    for task in getattr(app.state, "workers", []):
        task.cancel()
    await asyncio.gather(*getattr(app.state, "workers", []), return_exceptions=True)

    store = getattr(app.state, "store", None)
    if store:
        store.close()
