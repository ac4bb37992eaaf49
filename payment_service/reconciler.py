"""
Reconciliation of STK-push callbacks against pending transactions.

The gateway delivers callbacks at least once and at an arbitrary delay. Every payload is
written to the audit table first; the matching transaction (if any) is then moved from
``pending`` to exactly one terminal state. Terminal transactions never change state again,
so a redelivered callback only re-applies the values it already carried.
"""
import enum
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from payment_service.messaging import EventPublisher
from payment_service.models import CallbackResult, MpesaTransaction, TransactionStatus
from payment_service.schemas import CallbackEnvelope, StkCallback
from payment_service.store import TransactionStore

logger = logging.getLogger(__name__)

class MetadataField(enum.Enum):
    AMOUNT = "Amount"
    MPESA_RECEIPT_NUMBER = "MpesaReceiptNumber"
    TRANSACTION_DATE = "TransactionDate"
    PHONE_NUMBER = "PhoneNumber"

# attribute name on MpesaTransaction, converter for the raw value
METADATA_TARGETS: Dict[MetadataField, Tuple[str, Callable[[Any], Any]]] = {
    MetadataField.AMOUNT: ("amount", float),
    MetadataField.MPESA_RECEIPT_NUMBER: ("mpesa_receipt_number", str),
    MetadataField.TRANSACTION_DATE: ("transaction_date", str),
    MetadataField.PHONE_NUMBER: ("phone_number", str),
}

@dataclass
class FlattenedMetadata:
    fields: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

def flatten_metadata(callback: StkCallback) -> FlattenedMetadata:
    flattened = FlattenedMetadata()
    if callback.CallbackMetadata is None:
        return flattened
    for item in callback.CallbackMetadata.Item:
        if item.Value is None:
            continue
        try:
            name = MetadataField(item.Name)
        except ValueError:
            flattened.extra[item.Name] = item.Value
            continue
        attribute, convert = METADATA_TARGETS[name]
        try:
            flattened.fields[attribute] = convert(item.Value)
        except (TypeError, ValueError):
            logger.warning("Unparseable %s value in callback metadata: %r", item.Name, item.Value)
            flattened.extra[item.Name] = item.Value
    return flattened

def result_status(callback: StkCallback) -> TransactionStatus:
    return TransactionStatus.SUCCESS if callback.ResultCode == 0 else TransactionStatus.FAILED

def parse_callback(payload: Any) -> StkCallback:
    """Raises pydantic.ValidationError when the payload lacks Body.stkCallback."""
    return CallbackEnvelope.model_validate(payload).Body.stkCallback

LookupStrategy = Callable[[TransactionStore, StkCallback], Awaitable[Optional[MpesaTransaction]]]

async def by_checkout_request_id(store: TransactionStore, callback: StkCallback) -> Optional[MpesaTransaction]:
    if not callback.CheckoutRequestID:
        return None
    return await store.find_by_checkout_request_id(callback.CheckoutRequestID)

async def by_merchant_request_id(store: TransactionStore, callback: StkCallback) -> Optional[MpesaTransaction]:
    if not callback.MerchantRequestID:
        return None
    return await store.find_by_merchant_request_id(callback.MerchantRequestID)

LOOKUP_STRATEGIES: List[Tuple[str, LookupStrategy]] = [
    ("CheckoutRequestID", by_checkout_request_id),
    ("MerchantRequestID", by_merchant_request_id),
]

@dataclass
class ReconcileOutcome:
    transaction: Optional[MpesaTransaction] = None
    transitioned: bool = False
    audit_saved: bool = False
    persistence_error: bool = False

class CallbackReconciler:
    def __init__(self, store: TransactionStore, publisher: Optional[EventPublisher] = None):
        self.store = store
        self.publisher = publisher

    async def find_transaction(self, callback: StkCallback) -> Optional[MpesaTransaction]:
        for label, strategy in LOOKUP_STRATEGIES:
            transaction = await strategy(self.store, callback)
            logger.info("Lookup by %s found %s", label, "a transaction" if transaction else "nothing")
            if transaction is not None:
                return transaction
        return None

    def build_audit_record(self, callback: StkCallback, metadata: FlattenedMetadata, raw_payload: Any) -> CallbackResult:
        return CallbackResult(
            checkout_request_id=callback.audit_key,
            merchant_request_id=callback.MerchantRequestID,
            result_code=callback.ResultCode,
            result_desc=callback.ResultDesc,
            status=result_status(callback),
            mpesa_receipt_number=metadata.fields.get("mpesa_receipt_number"),
            transaction_date=metadata.fields.get("transaction_date"),
            amount=metadata.fields.get("amount"),
            phone_number=metadata.fields.get("phone_number"),
            raw_payload=json.dumps(raw_payload),
            received_at=datetime.utcnow(),
        )

    def apply(self, transaction: MpesaTransaction, callback: StkCallback, metadata: FlattenedMetadata) -> bool:
        """Merge the callback into the transaction. Returns True on a pending -> terminal move."""
        new_status = result_status(callback)
        transitioned = transaction.status == TransactionStatus.PENDING

        transaction.status = new_status
        transaction.result_code = callback.ResultCode
        if callback.ResultDesc is not None:
            transaction.result_desc = callback.ResultDesc
        for attribute, value in metadata.fields.items():
            setattr(transaction, attribute, value)
        if metadata.extra:
            extra = json.loads(transaction.extra) if transaction.extra else {}
            extra.update(metadata.extra)
            transaction.extra = json.dumps(extra)
        transaction.checkout_request_id = transaction.checkout_request_id or callback.CheckoutRequestID
        transaction.merchant_request_id = transaction.merchant_request_id or callback.MerchantRequestID
        transaction.updated_at = datetime.utcnow()
        return transitioned

    async def reconcile(self, callback: StkCallback, raw_payload: Any) -> ReconcileOutcome:
        outcome = ReconcileOutcome()
        metadata = flatten_metadata(callback)

        try:
            await self.store.save_callback_result(self.build_audit_record(callback, metadata, raw_payload))
            outcome.audit_saved = True
            logger.info("Callback result saved to mpesa_callback_results: %s", callback.audit_key)
        except Exception as e:
            outcome.persistence_error = True
            logger.error("Callback result save error for %s: %s", callback.audit_key, e, exc_info=True)

        try:
            transaction = await self.find_transaction(callback)
            if transaction is None:
                logger.warning(
                    "No matching transaction found to update for callback: %s %s",
                    callback.CheckoutRequestID, callback.MerchantRequestID,
                )
                return outcome

            outcome.transaction = transaction
            if transaction.is_terminal and transaction.status != result_status(callback):
                # A terminal transaction never changes state; the audit row keeps the late result
                log = logger.error if callback.ResultCode == 0 else logger.warning
                log(
                    "Ignoring %s callback for transaction %s already %s",
                    result_status(callback).value, transaction.id, transaction.status.value,
                )
                return outcome

            outcome.transitioned = self.apply(transaction, callback, metadata)
            await self.store.save(transaction)
            logger.info("Transaction updated from callback: %s (%s)", transaction.id, transaction.status.value)
        except Exception as e:
            outcome.persistence_error = True
            logger.error("Error updating transaction from callback: %s", e, exc_info=True)
            return outcome

        if outcome.transitioned and self.publisher is not None:
            await self.publisher.publish_outcome(transaction)
        return outcome
