import pytest
from unittest.mock import AsyncMock, patch

from payment_service.seeder import DEFAULT_PRICING, seed_pricing

async def single_session():
    yield None

@pytest.mark.asyncio
async def test_seed_pricing_populates_every_service(store):
    with patch("payment_service.seeder.init_db", AsyncMock()), \
         patch("payment_service.seeder.get_session", single_session), \
         patch("payment_service.seeder.TransactionStore", return_value=store):
        await seed_pricing()

    assert set(store.pricing) == set(DEFAULT_PRICING)
    assert store.pricing["tenders"].amount_for("PostService") == 150
    assert store.pricing["jobs"].amount_for("JobApplication") == 50
    assert store.pricing["education"].amount_for("JobApplication") is None

@pytest.mark.asyncio
async def test_seed_pricing_skips_when_already_seeded(store, capsys):
    store.set_pricing = AsyncMock(wraps=store.set_pricing)
    with patch("payment_service.seeder.init_db", AsyncMock()), \
         patch("payment_service.seeder.get_session", single_session), \
         patch("payment_service.seeder.TransactionStore", return_value=store):
        await seed_pricing()
        await seed_pricing()

    assert store.set_pricing.await_count == len(DEFAULT_PRICING)
    assert "already seeded" in capsys.readouterr().out
