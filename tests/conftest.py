from unittest.mock import AsyncMock

import httpx
import pytest

from payment_service.config import Settings
from payment_service.messaging import EventPublisher
from tests.fakes import GATEWAY_URL, FakeGateway, InMemoryTransactionStore

@pytest.fixture
def settings(monkeypatch):
    monkeypatch.setenv("MPESA_BASE_URL", GATEWAY_URL)
    monkeypatch.setenv("MPESA_CONSUMER_KEY", "consumer-key")
    monkeypatch.setenv("MPESA_CONSUMER_SECRET", "consumer-secret")
    monkeypatch.setenv("MPESA_SHORTCODE", "174379")
    monkeypatch.setenv("MPESA_PASSKEY", "passkey")
    monkeypatch.setenv("MPESA_CALLBACK_URL", "https://shop.test/api/mpesa/callback")
    monkeypatch.setenv("MPESA_PAYMENTS_PAUSED", "false")
    monkeypatch.setenv("MPESA_WHITELIST", "")
    monkeypatch.setenv("CALLBACK_ACK_ON_ERROR", "true")
    monkeypatch.delenv("RABBITMQ_URL", raising=False)
    return Settings()

@pytest.fixture
def store():
    return InMemoryTransactionStore()

@pytest.fixture
def gateway():
    return FakeGateway()

@pytest.fixture
async def http_client(gateway):
    async with httpx.AsyncClient(transport=httpx.MockTransport(gateway.handler)) as client:
        yield client

@pytest.fixture
def publisher():
    return AsyncMock(spec=EventPublisher)

