import pytest
import httpx
from unittest.mock import AsyncMock

from payment_service.config import get_settings
from payment_service.main import app, get_mpesa_client, get_publisher, get_store
from payment_service.models import ServicePricing, TransactionStatus, WhitelistEntry
from payment_service.mpesa import MpesaClient
from payment_service.session_cache import COOKIE_NAME
from tests.fakes import SUCCESS_ITEMS, make_callback, make_transaction

@pytest.fixture
async def api(settings, store, http_client, publisher):
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_publisher] = lambda: publisher
    app.dependency_overrides[get_mpesa_client] = lambda: MpesaClient(settings, http_client)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver") as client:
        yield client
    app.dependency_overrides.clear()

PAYMENT = {"phoneNumber": "0722000000", "amount": 10, "serviceType": "education", "actionType": "Videos", "userId": "user-1"}

def cookie_from(response: httpx.Response) -> str:
    header = response.headers["set-cookie"]
    return header.split(";", 1)[0].split("=", 1)[1]

# --- STK push ---

@pytest.mark.asyncio
async def test_stk_push_writes_pending_transaction(api, store, gateway):
    response = await api.post("/api/mpesa/stk-push", json=PAYMENT)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["CheckoutRequestID"] == "ws_CO_191220191020363925"
    assert len(body["timestamp"]) == 14

    transaction = store.transactions[0]
    assert body["transactionId"] == transaction.id
    assert transaction.status == TransactionStatus.PENDING
    assert transaction.phone_number == "254722000000"
    assert transaction.user_id == "user-1"
    assert gateway.stk_requests()[0]["CallBackURL"] == "https://shop.test/api/mpesa/callback"

@pytest.mark.asyncio
async def test_stk_push_missing_field_makes_no_gateway_call(api, store, gateway):
    payload = dict(PAYMENT)
    del payload["serviceType"]

    response = await api.post("/api/mpesa/stk-push", json=payload)

    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "Missing required fields"}
    assert gateway.call_count == 0
    assert store.transactions == []

@pytest.mark.asyncio
async def test_stk_push_refused_while_paused(api, settings, gateway):
    settings.payments_paused = True

    response = await api.post("/api/mpesa/stk-push", json=PAYMENT)

    assert response.status_code == 503
    assert response.json()["success"] is False
    assert gateway.call_count == 0

@pytest.mark.asyncio
async def test_stk_push_gateway_failure_is_structured(api, store, gateway):
    gateway.push_status = 500
    gateway.push_body = {"errorCode": "500.001.1001", "errorMessage": "Unable to lock subscriber"}

    response = await api.post("/api/mpesa/stk-push", json=PAYMENT)

    assert response.status_code == 500
    assert response.json() == {"success": False, "error": gateway.push_body}
    assert store.transactions == []

@pytest.mark.asyncio
async def test_stk_push_derives_callback_url_from_origin(api, settings, gateway):
    settings.mpesa_callback_url = None

    await api.post("/api/mpesa/stk-push", json=PAYMENT, headers={"Origin": "https://market.example"})

    assert gateway.stk_requests()[0]["CallBackURL"] == "https://market.example/api/mpesa/callback"

# --- Callback ---

@pytest.mark.asyncio
async def test_callback_rejects_malformed_payload(api, store):
    response = await api.post("/api/mpesa/callback", json={"Body": {}})

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid callback data"}
    assert store.callback_results == {}

@pytest.mark.asyncio
async def test_callback_acknowledges_unknown_transaction(api, store):
    response = await api.post("/api/mpesa/callback", json=make_callback(items=SUCCESS_ITEMS))

    assert response.status_code == 200
    assert response.json() == {"ResultCode": 0, "ResultDesc": "Success"}
    assert "ws_CO_191220191020363925" in store.callback_results

@pytest.mark.asyncio
async def test_callback_persistence_error_acknowledged_by_default(api, store):
    store.save_callback_result = AsyncMock(side_effect=RuntimeError("database down"))

    response = await api.post("/api/mpesa/callback", json=make_callback(items=SUCCESS_ITEMS))

    assert response.status_code == 200
    assert response.json()["ResultCode"] == 0

@pytest.mark.asyncio
async def test_callback_persistence_error_surfaces_when_policy_disabled(api, store, settings):
    settings.callback_ack_on_error = False
    store.save_callback_result = AsyncMock(side_effect=RuntimeError("database down"))

    response = await api.post("/api/mpesa/callback", json=make_callback(items=SUCCESS_ITEMS))

    assert response.status_code == 500
    assert response.json() == {"ResultCode": 1, "ResultDesc": "Failed"}

@pytest.mark.asyncio
async def test_callback_probe(api):
    response = await api.get("/api/mpesa/callback")
    assert response.status_code == 200

# --- Reporting ---

@pytest.mark.asyncio
async def test_get_transaction_by_checkout_id(api, store):
    await store.save(make_transaction())

    response = await api.get("/api/transactions/ws_CO_191220191020363925")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "pending"
    assert body["serviceType"] == "education"
    assert body["checkoutRequestId"] == "ws_CO_191220191020363925"

@pytest.mark.asyncio
async def test_get_unknown_transaction_returns_404(api):
    response = await api.get("/api/transactions/ws_CO_missing")
    assert response.status_code == 404

@pytest.mark.asyncio
async def test_list_and_summarise_transactions(api, store):
    await store.save(make_transaction(id="a", checkout_request_id="ws_a", status=TransactionStatus.SUCCESS, amount=10.0))
    await store.save(make_transaction(id="b", checkout_request_id="ws_b", status=TransactionStatus.SUCCESS, amount=20.0, service_type="jobs"))
    await store.save(make_transaction(id="c", checkout_request_id="ws_c", status=TransactionStatus.FAILED))
    await store.save(make_transaction(id="d", checkout_request_id="ws_d"))

    listed = await api.get("/api/transactions", params={"status": "success"})
    assert {tx["id"] for tx in listed.json()} == {"a", "b"}

    by_service = await api.get("/api/transactions", params={"serviceType": "jobs"})
    assert [tx["id"] for tx in by_service.json()] == ["b"]

    summary = (await api.get("/api/transactions/summary")).json()
    assert summary == {"total": 4, "successful": 2, "failed": 1, "pending": 1, "totalAmount": 30.0}

@pytest.mark.asyncio
async def test_list_rejects_unknown_status(api):
    response = await api.get("/api/transactions", params={"status": "refunded"})
    assert response.status_code == 400

@pytest.mark.asyncio
async def test_export_transactions_as_csv(api, store):
    await store.save(make_transaction(status=TransactionStatus.SUCCESS, mpesa_receipt_number="ABC123"))

    response = await api.get("/api/transactions/export")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    lines = response.text.strip().splitlines()
    assert lines[0] == "Date,Phone,Service,Action,Amount,Status,Receipt,Description"
    assert "ABC123" in lines[1]
    assert ",success," in lines[1]

@pytest.mark.asyncio
async def test_manual_sweep(api, store, settings):
    from datetime import datetime, timedelta
    stale = await store.save(make_transaction(created_at=datetime.utcnow() - timedelta(minutes=settings.pending_timeout_minutes + 1)))

    response = await api.post("/api/transactions/sweep")

    assert response.json() == {"expired": [stale.id]}
    assert stale.status == TransactionStatus.FAILED

@pytest.mark.asyncio
async def test_get_callback_result(api):
    await api.post("/api/mpesa/callback", json=make_callback(items=SUCCESS_ITEMS))

    response = await api.get("/api/callbacks/ws_CO_191220191020363925")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "success"
    assert body["mpesaReceiptNumber"] == "ABC123"
    assert "timestamp" in body

# --- Payment options ---

@pytest.mark.asyncio
async def test_payment_options_reports_pricing_and_whitelist(api, store, settings):
    settings.whitelist = ["vip@example.com"]
    store.pricing["jobs"] = ServicePricing(
        service_type="jobs", continue_amount=20, videos_amount=50,
        post_service_amount=100, job_application_amount=50, deleted=False,
    )
    store.whitelist.append(WhitelistEntry(kind="phone", value="0711111111", deleted=False))

    by_phone = await api.get("/api/payments/options", params={
        "serviceType": "jobs", "actionType": "JobApplication", "contact": "+254711111111",
    })
    assert by_phone.json() == {"paused": False, "whitelisted": True, "amount": 50.0}

    by_email = await api.get("/api/payments/options", params={
        "serviceType": "jobs", "actionType": "Continue", "contact": "VIP@example.com",
    })
    assert by_email.json()["whitelisted"] is True
    assert by_email.json()["amount"] == 20.0

    unpriced = await api.get("/api/payments/options", params={"serviceType": "tenders", "actionType": "Continue"})
    assert unpriced.json() == {"paused": False, "whitelisted": False, "amount": None}

# --- Paid sessions ---

@pytest.mark.asyncio
async def test_record_paid_session_requires_successful_transaction(api, store):
    await store.save(make_transaction())

    pending = await api.post("/api/sessions", json={"checkoutRequestId": "ws_CO_191220191020363925"})
    missing = await api.post("/api/sessions", json={"checkoutRequestId": "ws_CO_missing"})

    assert pending.status_code == 409
    assert missing.status_code == 404

@pytest.mark.asyncio
async def test_paid_session_round_trip(api, store):
    await store.save(make_transaction(status=TransactionStatus.SUCCESS, action_type="Continue", service_type="jobs"))

    recorded = await api.post("/api/sessions", json={"checkoutRequestId": "ws_CO_191220191020363925"})
    assert recorded.status_code == 201
    assert recorded.json()["serviceType"] == "jobs"
    cookie = cookie_from(recorded)

    headers = {"Cookie": f"{COOKIE_NAME}={cookie}"}
    status = await api.get("/api/sessions/jobs/Continue", headers=headers)
    assert status.json()["active"] is True
    assert status.json()["session"]["transactionId"] == "tx-1"

    other = await api.get("/api/sessions/jobs/Videos", headers=headers)
    assert other.json() == {"active": False, "session": None}

    listed = await api.get("/api/sessions", headers=headers)
    assert len(listed.json()) == 1

    cleared = await api.delete("/api/sessions")
    assert cleared.status_code == 204
    assert "Max-Age=0" in cleared.headers["set-cookie"]

@pytest.mark.asyncio
async def test_stk_push_reports_unrecorded_pending_write_as_json(api, store, gateway):
    store.save = AsyncMock(side_effect=RuntimeError("database down"))

    response = await api.post("/api/mpesa/stk-push", json=PAYMENT)

    assert response.status_code == 500
    assert response.headers["content-type"].startswith("application/json")
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "Payment request sent but could not be recorded"
    assert body["data"]["CheckoutRequestID"] == "ws_CO_191220191020363925"
    assert "transactionId" not in body
    assert len(gateway.stk_requests()) == 1

@pytest.mark.asyncio
async def test_stk_push_wrongly_typed_amount_uses_payment_error_shape(api, gateway):
    payload = dict(PAYMENT, amount="ten shillings")

    response = await api.post("/api/mpesa/stk-push", json=payload)

    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "Invalid fields: amount"}
    assert gateway.call_count == 0

@pytest.mark.asyncio
async def test_stk_push_accepts_numeric_phone_number(api, store):
    payload = dict(PAYMENT, phoneNumber=722000000)

    response = await api.post("/api/mpesa/stk-push", json=payload)

    assert response.status_code == 200
    assert store.transactions[0].phone_number == "254722000000"

@pytest.mark.asyncio
async def test_other_endpoints_keep_default_validation_errors(api):
    response = await api.get("/api/transactions", params={"limit": "many"})
    assert response.status_code == 422
    assert "detail" in response.json()
