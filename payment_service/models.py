from sqlalchemy import Column, String, Float, Integer, Boolean, DateTime, Text, Enum
from sqlalchemy.orm import declarative_base
from datetime import datetime
import enum

Base = declarative_base()

class TransactionStatus(enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"

TERMINAL_STATUSES = (TransactionStatus.SUCCESS, TransactionStatus.FAILED)

class MpesaTransaction(Base):
    __tablename__ = "mpesa_transactions"

    id = Column(String, primary_key=True, index=True)
    checkout_request_id = Column(String, index=True, nullable=True)
    merchant_request_id = Column(String, index=True, nullable=True)
    phone_number = Column(String, nullable=False)
    amount = Column(Float, nullable=False)
    service_type = Column(String, index=True, nullable=False)
    action_type = Column(String, nullable=False)
    user_id = Column(String, index=True, nullable=True)
    status = Column(Enum(TransactionStatus), default=TransactionStatus.PENDING, nullable=False)
    result_code = Column(Integer, nullable=True)
    result_desc = Column(String, nullable=True)
    mpesa_receipt_number = Column(String, nullable=True)
    transaction_date = Column(String, nullable=True)
    extra = Column(Text, nullable=True) # JSON bag of unrecognised callback metadata
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

class CallbackResult(Base):
    """Audit copy of every callback the gateway delivers, keyed by checkout request id."""
    __tablename__ = "mpesa_callback_results"

    checkout_request_id = Column(String, primary_key=True, index=True)
    merchant_request_id = Column(String, nullable=True)
    result_code = Column(Integer, nullable=True)
    result_desc = Column(String, nullable=True)
    status = Column(Enum(TransactionStatus), nullable=False)
    mpesa_receipt_number = Column(String, nullable=True)
    transaction_date = Column(String, nullable=True)
    amount = Column(Float, nullable=True)
    phone_number = Column(String, nullable=True)
    raw_payload = Column(Text, nullable=False)
    received_at = Column(DateTime, default=datetime.utcnow, nullable=False)

class ServicePricing(Base):
    __tablename__ = "service_pricing"

    service_type = Column(String, primary_key=True, index=True)
    continue_amount = Column(Float, nullable=False)
    videos_amount = Column(Float, nullable=False)
    post_service_amount = Column(Float, nullable=False)
    job_application_amount = Column(Float, nullable=True) # only the jobs category charges for applications
    deleted = Column(Boolean, default=False, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    updated_by = Column(String, nullable=True)

    def amount_for(self, action_type: str):
        return {
            "Continue": self.continue_amount,
            "Videos": self.videos_amount,
            "PostService": self.post_service_amount,
            "JobApplication": self.job_application_amount,
        }.get(action_type)

class WhitelistEntry(Base):
    __tablename__ = "whitelist_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String, nullable=False) # "phone" or "email"
    value = Column(String, nullable=False)
    deleted = Column(Boolean, default=False, nullable=False)
    added_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    added_by = Column(String, nullable=True)
