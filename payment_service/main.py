import asyncio
import csv
import io
import logging
import uvicorn
from datetime import timedelta
from typing import List, Optional
from uuid import uuid4

import httpx
from fastapi import FastAPI, HTTPException, Depends, Request, Response, Query
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from payment_service.config import Settings, get_settings
from payment_service.database import init_db, get_session
from payment_service.messaging import EventPublisher
from payment_service.models import MpesaTransaction, TransactionStatus
from payment_service.mpesa import MpesaClient, initiate_payment, matches_whitelist, normalize_phone_number
from payment_service.reconciler import CallbackReconciler, parse_callback
from payment_service.schemas import (
    CallbackResultRead,
    PaidSession,
    PaidSessionCreate,
    PaidSessionStatus,
    PaymentOptions,
    PaymentRequest,
    PaymentResponse,
    SweepResult,
    TransactionRead,
    TransactionSummary,
)
from payment_service.session_cache import COOKIE_NAME, PaidSessionCache, clear_payment_sessions
from payment_service.store import TransactionStore
from payment_service.sweeper import run_sweeper, sweep_stale_transactions

logger = logging.getLogger(__name__)

STK_PUSH_PATH = "/api/mpesa/stk-push"
CALLBACK_PATH = "/api/mpesa/callback"
CALLBACK_ACK = {"ResultCode": 0, "ResultDesc": "Success"}
CALLBACK_FAILED = {"ResultCode": 1, "ResultDesc": "Failed"}

app = FastAPI(title="M-Pesa Payment Service")

@app.on_event("startup")
async def startup_event():
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    await init_db()
    app.state.http_client = httpx.AsyncClient()
    app.state.publisher = EventPublisher(settings.rabbitmq_url)
    await app.state.publisher.setup()
    if settings.sweeper_enabled:
        app.state.sweeper = asyncio.create_task(run_sweeper(settings, app.state.publisher))

@app.on_event("shutdown")
async def shutdown_event():
    sweeper = getattr(app.state, "sweeper", None)
    if sweeper is not None:
        sweeper.cancel()
    await app.state.http_client.aclose()
    await app.state.publisher.close()

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # Payment initiation always answers in the {success, error} shape
    if request.url.path != STK_PUSH_PATH:
        return await request_validation_exception_handler(request, exc)
    fields = sorted({str(error["loc"][-1]) for error in exc.errors()})
    logger.warning("Rejected STK push request, invalid fields: %s", fields)
    failure = PaymentResponse(success=False, error="Invalid fields: " + ", ".join(fields))
    return JSONResponse(status_code=400, content=failure.model_dump(by_alias=True, exclude_none=True))

# --- Dependencies ---

async def get_store(db: AsyncSession = Depends(get_session)) -> TransactionStore:
    return TransactionStore(db)

def get_publisher(request: Request) -> Optional[EventPublisher]:
    return getattr(request.app.state, "publisher", None)

def get_mpesa_client(request: Request, settings: Settings = Depends(get_settings)) -> MpesaClient:
    return MpesaClient(settings, request.app.state.http_client)

def callback_url_for(request: Request, settings: Settings) -> str:
    if settings.mpesa_callback_url:
        return settings.mpesa_callback_url
    origin = request.headers.get("origin") or str(request.base_url)
    return origin.rstrip("/") + CALLBACK_PATH

# --- Payment initiation ---

@app.post(STK_PUSH_PATH, response_model=PaymentResponse, response_model_exclude_none=True)
async def stk_push(
    payment: PaymentRequest,
    request: Request,
    settings: Settings = Depends(get_settings),
    client: MpesaClient = Depends(get_mpesa_client),
    store: TransactionStore = Depends(get_store),
):
    if settings.payments_paused:
        failure = PaymentResponse(success=False, error="M-Pesa payments are currently paused")
        return JSONResponse(status_code=503, content=failure.model_dump(by_alias=True, exclude_none=True))

    result = await initiate_payment(client, payment, callback_url_for(request, settings))
    if not result.success:
        status_code = 400 if payment.missing_fields() else 500
        return JSONResponse(status_code=status_code, content=result.model_dump(by_alias=True, exclude_none=True))

    if result.checkout_request_id or result.merchant_request_id:
        transaction = MpesaTransaction(
            id=str(uuid4()),
            checkout_request_id=result.checkout_request_id,
            merchant_request_id=result.merchant_request_id,
            phone_number=normalize_phone_number(payment.phone_number),
            amount=float(int(payment.amount)),
            service_type=payment.service_type,
            action_type=payment.action_type,
            user_id=payment.user_id,
            status=TransactionStatus.PENDING,
        )
        try:
            transaction = await store.save(transaction)
        except Exception as e:
            # The prompt is already on the payer's phone; its callback will land only in the audit table
            logger.error(
                "Failed to record pending transaction for CheckoutID %s: %s",
                result.checkout_request_id, e, exc_info=True,
            )
            failure = PaymentResponse(
                success=False,
                data=result.data,
                timestamp=result.timestamp,
                error="Payment request sent but could not be recorded",
            )
            return JSONResponse(status_code=500, content=failure.model_dump(by_alias=True, exclude_none=True))
        result.transaction_id = transaction.id
        logger.info("STK Push successful. CheckoutID: %s", result.checkout_request_id)
    else:
        logger.warning("STK Push acknowledged without request identifiers: %s", result.data)
    return result

# --- Gateway callback ---

@app.get(CALLBACK_PATH)
async def callback_probe():
    return {"status": "Callback URL is active. Waiting for POST data."}

@app.post(CALLBACK_PATH)
async def mpesa_callback(
    request: Request,
    settings: Settings = Depends(get_settings),
    store: TransactionStore = Depends(get_store),
    publisher: Optional[EventPublisher] = Depends(get_publisher),
):
    try:
        payload = await request.json()
        logger.info("M-Pesa Callback received: %s", payload)
        try:
            callback = parse_callback(payload)
        except ValidationError:
            logger.error("Invalid callback structure")
            return JSONResponse(status_code=400, content={"error": "Invalid callback data"})

        outcome = await CallbackReconciler(store, publisher).reconcile(callback, payload)
        if outcome.persistence_error and not settings.callback_ack_on_error:
            return JSONResponse(status_code=500, content=CALLBACK_FAILED)
        return CALLBACK_ACK
    except Exception as e:
        logger.error("Callback processing error: %s", e, exc_info=True)
        return JSONResponse(status_code=500, content=CALLBACK_FAILED)

# --- Payment options (pause switch, whitelist, pricing) ---

@app.get("/api/payments/options", response_model=PaymentOptions)
async def payment_options(
    service_type: str = Query(..., alias="serviceType"),
    action_type: str = Query(..., alias="actionType"),
    contact: Optional[str] = None,
    settings: Settings = Depends(get_settings),
    store: TransactionStore = Depends(get_store),
):
    whitelisted = False
    if contact:
        entries = list(settings.whitelist)
        entries.extend(entry.value for entry in await store.list_whitelist())
        whitelisted = matches_whitelist(contact, entries)

    pricing = await store.get_pricing(service_type)
    amount = pricing.amount_for(action_type) if pricing else None
    return PaymentOptions(paused=settings.payments_paused, whitelisted=whitelisted, amount=amount)

# --- Transaction reporting ---

def _parse_status(status: Optional[str]) -> Optional[TransactionStatus]:
    if not status or status == "all":
        return None
    try:
        return TransactionStatus(status)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown status: {status}")

@app.get("/api/transactions", response_model=List[TransactionRead])
async def list_transactions(
    status: Optional[str] = None,
    service_type: Optional[str] = Query(None, alias="serviceType"),
    limit: int = Query(50, ge=1, le=500),
    store: TransactionStore = Depends(get_store),
):
    transactions = await store.list_transactions(_parse_status(status), service_type, limit)
    return [TransactionRead.model_validate(tx) for tx in transactions]

@app.get("/api/transactions/summary", response_model=TransactionSummary)
async def transaction_summary(
    service_type: Optional[str] = Query(None, alias="serviceType"),
    limit: int = Query(500, ge=1, le=5000),
    store: TransactionStore = Depends(get_store),
):
    transactions = await store.list_transactions(None, service_type, limit)
    successful = [tx for tx in transactions if tx.status == TransactionStatus.SUCCESS]
    return TransactionSummary(
        total=len(transactions),
        successful=len(successful),
        failed=sum(1 for tx in transactions if tx.status == TransactionStatus.FAILED),
        pending=sum(1 for tx in transactions if tx.status == TransactionStatus.PENDING),
        total_amount=sum(tx.amount for tx in successful),
    )

@app.get("/api/transactions/export")
async def export_transactions(
    status: Optional[str] = None,
    service_type: Optional[str] = Query(None, alias="serviceType"),
    limit: int = Query(500, ge=1, le=5000),
    store: TransactionStore = Depends(get_store),
):
    transactions = await store.list_transactions(_parse_status(status), service_type, limit)
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(["Date", "Phone", "Service", "Action", "Amount", "Status", "Receipt", "Description"])
    for tx in transactions:
        writer.writerow([
            tx.created_at.isoformat(),
            tx.phone_number,
            tx.service_type,
            tx.action_type,
            tx.amount,
            tx.status.value,
            tx.mpesa_receipt_number or "",
            tx.result_desc or "",
        ])
    return Response(
        content=buffer.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="mpesa-transactions.csv"'},
    )

@app.post("/api/transactions/sweep", response_model=SweepResult)
async def sweep_transactions(
    settings: Settings = Depends(get_settings),
    store: TransactionStore = Depends(get_store),
    publisher: Optional[EventPublisher] = Depends(get_publisher),
):
    expired = await sweep_stale_transactions(
        store, timedelta(minutes=settings.pending_timeout_minutes), publisher
    )
    return SweepResult(expired=[tx.id for tx in expired])

@app.get("/api/transactions/{checkout_request_id}", response_model=TransactionRead)
async def get_transaction(checkout_request_id: str, store: TransactionStore = Depends(get_store)):
    transaction = await store.find_by_checkout_request_id(checkout_request_id)
    if not transaction:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return TransactionRead.model_validate(transaction)

@app.get("/api/callbacks/{checkout_request_id}", response_model=CallbackResultRead)
async def get_callback_result(checkout_request_id: str, store: TransactionStore = Depends(get_store)):
    callback_result = await store.get_callback_result(checkout_request_id)
    if not callback_result:
        raise HTTPException(status_code=404, detail="Callback result not found")
    return CallbackResultRead.model_validate(callback_result)

# --- Paid sessions ---

@app.get("/api/sessions", response_model=List[PaidSession])
async def list_paid_sessions(request: Request):
    return PaidSessionCache(request.cookies.get(COOKIE_NAME)).get_all_active_sessions()

@app.get("/api/sessions/{service_type}/{action_type}", response_model=PaidSessionStatus)
async def paid_session_status(service_type: str, action_type: str, request: Request):
    session = PaidSessionCache(request.cookies.get(COOKIE_NAME)).get_paid_session_details(service_type, action_type)
    return PaidSessionStatus(active=session is not None, session=session)

@app.post("/api/sessions", response_model=PaidSession, status_code=201)
async def record_paid_session(
    body: PaidSessionCreate,
    request: Request,
    response: Response,
    store: TransactionStore = Depends(get_store),
):
    transaction = await store.find_by_checkout_request_id(body.checkout_request_id)
    if not transaction:
        raise HTTPException(status_code=404, detail="Transaction not found")
    if transaction.status != TransactionStatus.SUCCESS:
        raise HTTPException(status_code=409, detail=f"Transaction is {transaction.status.value}")

    cache = PaidSessionCache(request.cookies.get(COOKIE_NAME))
    session = cache.record_payment_session(
        transaction.service_type, transaction.action_type, transaction.phone_number, transaction.id
    )
    cache.write(response)
    return session

@app.delete("/api/sessions", status_code=204)
async def clear_paid_sessions(response: Response):
    clear_payment_sessions(response)

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
