from pydantic import BaseModel, Field, field_serializer, field_validator, model_validator
from typing import List, Any, Optional, Dict
from datetime import datetime, timezone
import json
from payment_service.models import TransactionStatus

class PaymentRequest(BaseModel):
    # Presence is checked by the initiator so a missing field gets the gateway-style error body
    phone_number: Optional[str] = Field(None, alias="phoneNumber", example="0712345678")
    amount: Optional[float] = Field(None, example=10)
    service_type: Optional[str] = Field(None, alias="serviceType", example="education")
    action_type: Optional[str] = Field(None, alias="actionType", example="Videos")
    user_id: Optional[str] = Field(None, alias="userId")

    class Config:
        populate_by_name = True
        coerce_numbers_to_str = True

    def missing_fields(self) -> List[str]:
        required = {
            "phoneNumber": self.phone_number,
            "amount": self.amount,
            "serviceType": self.service_type,
            "actionType": self.action_type,
        }
        return [name for name, value in required.items() if not value]

class PaymentResponse(BaseModel):
    success: bool
    data: Optional[Dict[str, Any]] = None
    timestamp: Optional[str] = None
    transaction_id: Optional[str] = Field(None, alias="transactionId")
    error: Optional[Any] = None

    class Config:
        populate_by_name = True

    @property
    def checkout_request_id(self) -> Optional[str]:
        return (self.data or {}).get("CheckoutRequestID")

    @property
    def merchant_request_id(self) -> Optional[str]:
        return (self.data or {}).get("MerchantRequestID")

class PaymentOptions(BaseModel):
    paused: bool
    whitelisted: bool
    amount: Optional[float] = None

# --- Gateway callback payload ---

class StkCallbackItem(BaseModel):
    Name: str
    Value: Any = None

class StkCallbackMetadata(BaseModel):
    Item: List[StkCallbackItem] = []

class StkCallback(BaseModel):
    MerchantRequestID: Optional[str] = None
    CheckoutRequestID: Optional[str] = None
    ResultCode: int
    ResultDesc: Optional[str] = None
    CallbackMetadata: Optional[StkCallbackMetadata] = None

    @model_validator(mode="after")
    def require_some_identifier(self) -> "StkCallback":
        if not self.CheckoutRequestID and not self.MerchantRequestID:
            raise ValueError("callback carries neither CheckoutRequestID nor MerchantRequestID")
        return self

    @property
    def audit_key(self) -> str:
        return self.CheckoutRequestID or self.MerchantRequestID

class CallbackBody(BaseModel):
    stkCallback: StkCallback

class CallbackEnvelope(BaseModel):
    Body: CallbackBody

# --- Read models ---

class TransactionRead(BaseModel):
    id: str
    checkout_request_id: Optional[str] = Field(None, alias="checkoutRequestId")
    merchant_request_id: Optional[str] = Field(None, alias="merchantRequestId")
    phone_number: str = Field(..., alias="phoneNumber")
    amount: float
    service_type: str = Field(..., alias="serviceType")
    action_type: str = Field(..., alias="actionType")
    user_id: Optional[str] = Field(None, alias="userId")
    status: TransactionStatus
    result_code: Optional[int] = Field(None, alias="resultCode")
    result_desc: Optional[str] = Field(None, alias="resultDesc")
    mpesa_receipt_number: Optional[str] = Field(None, alias="mpesaReceiptNumber")
    transaction_date: Optional[str] = Field(None, alias="transactionDate")
    extra: Dict[str, Any] = {}
    created_at: datetime = Field(..., alias="createdAt")
    updated_at: datetime = Field(..., alias="updatedAt")

    @field_validator('extra', mode='before')
    @classmethod
    def parse_extra(cls, v: Any) -> Dict[str, Any]:
        if v is None:
            return {}
        if isinstance(v, str):
            return json.loads(v)
        return v

    class Config:
        from_attributes = True
        populate_by_name = True

class CallbackResultRead(BaseModel):
    checkout_request_id: str = Field(..., alias="checkoutRequestId")
    merchant_request_id: Optional[str] = Field(None, alias="merchantRequestId")
    result_code: Optional[int] = Field(None, alias="resultCode")
    result_desc: Optional[str] = Field(None, alias="resultDesc")
    status: TransactionStatus
    mpesa_receipt_number: Optional[str] = Field(None, alias="mpesaReceiptNumber")
    transaction_date: Optional[str] = Field(None, alias="transactionDate")
    amount: Optional[float] = None
    phone_number: Optional[str] = Field(None, alias="phoneNumber")
    received_at: datetime = Field(..., alias="timestamp")

    class Config:
        from_attributes = True
        populate_by_name = True

class TransactionSummary(BaseModel):
    total: int
    successful: int
    failed: int
    pending: int
    total_amount: float = Field(..., alias="totalAmount")

    class Config:
        populate_by_name = True

class SweepResult(BaseModel):
    expired: List[str]

class PaidSession(BaseModel):
    service_type: str = Field(..., alias="serviceType")
    action_type: str = Field(..., alias="actionType")
    phone_number: str = Field(..., alias="phoneNumber")
    paid_at: datetime = Field(..., alias="paidAt")
    transaction_id: str = Field(..., alias="transactionId")

    class Config:
        populate_by_name = True

    @field_validator("paid_at", mode="after")
    @classmethod
    def paid_at_as_naive_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is not None:
            return v.astimezone(timezone.utc).replace(tzinfo=None)
        return v

    @field_serializer("paid_at")
    def serialize_paid_at(self, paid_at: datetime) -> str:
        # Browsers parse an ISO string without an offset as local time
        return paid_at.isoformat(timespec="milliseconds") + "Z"

class PaidSessionCreate(BaseModel):
    checkout_request_id: str = Field(..., alias="checkoutRequestId")

    class Config:
        populate_by_name = True

class PaidSessionStatus(BaseModel):
    active: bool
    session: Optional[PaidSession] = None
