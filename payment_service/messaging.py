import json
import logging
from datetime import datetime
from typing import Optional
from uuid import uuid4

import aio_pika
from tenacity import retry, stop_after_attempt, wait_exponential

from payment_service.models import MpesaTransaction, TransactionStatus

logger = logging.getLogger(__name__)

PAYMENT_EXCHANGE = "payment_exchange"

ROUTING_KEYS = {
    TransactionStatus.SUCCESS: ("payment.succeeded", "PaymentSucceeded"),
    TransactionStatus.FAILED: ("payment.failed", "PaymentFailed"),
}

class EventPublisher:
    """Publishes payment outcome events to a RabbitMQ topic exchange."""

    def __init__(self, url: Optional[str]):
        self.url = url
        self.connection = None
        self.channel = None
        self.exchange = None

    @property
    def enabled(self) -> bool:
        return self.url is not None

    @retry(stop=stop_after_attempt(5), wait=wait_exponential(multiplier=1, min=2, max=10), reraise=True)
    async def connect(self):
        self.connection = await aio_pika.connect_robust(self.url)
        self.channel = await self.connection.channel()
        self.exchange = await self.channel.declare_exchange(PAYMENT_EXCHANGE, aio_pika.ExchangeType.TOPIC, durable=True)
        logger.info("RabbitMQ setup complete.")

    async def setup(self):
        if not self.enabled:
            logger.info("RABBITMQ_URL not set; payment events will not be published.")
            return
        try:
            await self.connect()
        except Exception as e:
            logger.error("Error setting up RabbitMQ: %s", e)

    async def close(self):
        if self.connection is not None:
            await self.connection.close()
            self.connection = None
            self.channel = None
            self.exchange = None

    async def publish(self, routing_key: str, message_data: dict):
        if self.exchange is None:
            logger.debug("RabbitMQ channel not available. Skipping %s event.", routing_key)
            return

        message = aio_pika.Message(
            json.dumps(message_data).encode('utf-8'),
            content_type='application/json',
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT
        )
        try:
            await self.exchange.publish(message, routing_key=routing_key)
            logger.info("Published event to %s: %s", routing_key, message_data['event_type'])
        except Exception as e:
            logger.error("Error publishing event: %s", e)

    async def publish_outcome(self, transaction: MpesaTransaction):
        if transaction.status not in ROUTING_KEYS:
            return
        routing_key, event_type = ROUTING_KEYS[transaction.status]
        await self.publish(routing_key, build_outcome_event(transaction, event_type))

def build_outcome_event(transaction: MpesaTransaction, event_type: str) -> dict:
    return {
        "event_id": str(uuid4()),
        "event_type": event_type,
        "timestamp": str(datetime.utcnow()),
        "transaction_id": transaction.id,
        "checkout_request_id": transaction.checkout_request_id,
        "merchant_request_id": transaction.merchant_request_id,
        "service_type": transaction.service_type,
        "action_type": transaction.action_type,
        "user_id": transaction.user_id,
        "amount": transaction.amount,
        "mpesa_receipt_number": transaction.mpesa_receipt_number,
        "result_desc": transaction.result_desc,
    }
