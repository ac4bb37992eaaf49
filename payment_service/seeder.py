import asyncio
from payment_service.database import get_session, init_db
from payment_service.models import ServicePricing
from payment_service.store import TransactionStore

DEFAULT_PRICING = {
    "agriculture": (20, 50, 100),
    "construction": (20, 50, 100),
    "education": (20, 50, 100),
    "entertainment": (20, 50, 100),
    "health": (20, 50, 100),
    "hotel-industry": (20, 50, 100),
    "jobs": (20, 50, 100),
    "sme-products": (20, 50, 100),
    "tenders": (30, 50, 150),
    "transport": (20, 50, 100),
}
JOB_APPLICATION_AMOUNT = 50

async def seed_pricing():
    await init_db()
    async for session in get_session():
        store = TransactionStore(session)
        # Check if pricing is already seeded
        if await store.get_pricing("education"):
            print("Service pricing already seeded.")
            return

        for service_type, (continue_amount, videos_amount, post_service_amount) in DEFAULT_PRICING.items():
            await store.set_pricing(ServicePricing(
                service_type=service_type,
                continue_amount=continue_amount,
                videos_amount=videos_amount,
                post_service_amount=post_service_amount,
                job_application_amount=JOB_APPLICATION_AMOUNT if service_type == "jobs" else None,
                updated_by="seeder",
            ))
        print("Service pricing seeded successfully.")

if __name__ == "__main__":
    asyncio.run(seed_pricing())
