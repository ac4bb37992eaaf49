from datetime import datetime
from typing import List, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from payment_service.models import (
    CallbackResult,
    MpesaTransaction,
    ServicePricing,
    TransactionStatus,
    WhitelistEntry,
)

class TransactionStore:
    """Persistence for transactions, callback audit records, pricing and the whitelist.

    One store wraps one session; handlers receive it through dependency injection.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _commit(self):
        # A failed flush leaves the session unusable until it is rolled back
        try:
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

    async def save(self, transaction: MpesaTransaction) -> MpesaTransaction:
        self.session.add(transaction)
        await self._commit()
        await self.session.refresh(transaction)
        return transaction

    async def find_by_checkout_request_id(self, checkout_request_id: str) -> Optional[MpesaTransaction]:
        result = await self.session.execute(
            select(MpesaTransaction)
            .where(MpesaTransaction.checkout_request_id == checkout_request_id)
            .order_by(MpesaTransaction.created_at.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def find_by_merchant_request_id(self, merchant_request_id: str) -> Optional[MpesaTransaction]:
        result = await self.session.execute(
            select(MpesaTransaction)
            .where(MpesaTransaction.merchant_request_id == merchant_request_id)
            .order_by(MpesaTransaction.created_at.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def list_transactions(
        self,
        status: Optional[TransactionStatus] = None,
        service_type: Optional[str] = None,
        limit: int = 50,
    ) -> List[MpesaTransaction]:
        query = select(MpesaTransaction)
        if status is not None:
            query = query.where(MpesaTransaction.status == status)
        if service_type:
            query = query.where(MpesaTransaction.service_type == service_type)
        query = query.order_by(MpesaTransaction.created_at.desc()).limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def list_stale_pending(self, cutoff: datetime) -> List[MpesaTransaction]:
        result = await self.session.execute(
            select(MpesaTransaction)
            .where(MpesaTransaction.status == TransactionStatus.PENDING)
            .where(MpesaTransaction.created_at < cutoff)
        )
        return list(result.scalars().all())

    async def save_callback_result(self, callback_result: CallbackResult) -> CallbackResult:
        # merge() upserts on the primary key, so a redelivered callback overwrites its audit row
        merged = await self.session.merge(callback_result)
        await self._commit()
        return merged

    async def get_callback_result(self, checkout_request_id: str) -> Optional[CallbackResult]:
        return await self.session.get(CallbackResult, checkout_request_id)

    async def get_pricing(self, service_type: str) -> Optional[ServicePricing]:
        pricing = await self.session.get(ServicePricing, service_type)
        if pricing is None or pricing.deleted:
            return None
        return pricing

    async def set_pricing(self, pricing: ServicePricing) -> ServicePricing:
        merged = await self.session.merge(pricing)
        await self._commit()
        return merged

    async def list_whitelist(self, kind: Optional[str] = None) -> List[WhitelistEntry]:
        query = select(WhitelistEntry).where(WhitelistEntry.deleted.is_(False))
        if kind:
            query = query.where(WhitelistEntry.kind == kind)
        result = await self.session.execute(query)
        return list(result.scalars().all())
