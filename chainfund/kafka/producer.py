import asyncio
import json
from typing import Iterable, Optional, Tuple

import structlog
from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError

from chainfund.core.clock import utcnow
from chainfund.core.config import get_settings
from chainfund.middleware.metrics import notifications_total

logger = structlog.get_logger(__name__)
settings = get_settings()

Notification = Tuple[str, dict]


class NotificationProducer:
    """
    Publishes notification events to Kafka for the notification service.

    Delivery is best effort: every failure is logged and swallowed so a
    broken broker never affects a financial operation.
    """

    def __init__(self):
        self.producer: Optional[AIOKafkaProducer] = None
        self.bootstrap_servers = settings.kafka_bootstrap_servers
        self.topic = settings.kafka_topic_notifications
        self.timeout = settings.notification_timeout_seconds

    async def start(self):
        try:
            self.producer = AIOKafkaProducer(
                bootstrap_servers=self.bootstrap_servers,
                value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
                compression_type="gzip",
                acks="all",
                retry_backoff_ms=500,
                request_timeout_ms=int(self.timeout * 1000),
            )
            await self.producer.start()
            logger.info("Kafka producer started", bootstrap_servers=self.bootstrap_servers)
        except KafkaError as e:
            self.producer = None
            logger.error("Failed to start Kafka producer", error=str(e))
            raise

    async def stop(self):
        if self.producer:
            try:
                await self.producer.stop()
                logger.info("Kafka producer stopped")
            except KafkaError as e:
                logger.error("Error stopping Kafka producer", error=str(e))
            finally:
                self.producer = None

    def is_connected(self) -> bool:
        return self.producer is not None

    async def notify(self, event_type: str, payload: dict) -> bool:
        """Publish one notification; returns False instead of raising"""
        if not self.producer:
            logger.warning("Kafka producer not initialized, dropping notification", event_type=event_type)
            notifications_total.labels(status="dropped").inc()
            return False

        event = {
            "event_type": event_type,
            "timestamp": utcnow().isoformat(),
            **payload,
        }
        try:
            await asyncio.wait_for(
                self.producer.send_and_wait(self.topic, value=event),
                timeout=self.timeout,
            )
            logger.info("Published notification", event_type=event_type, topic=self.topic)
            notifications_total.labels(status="sent").inc()
            return True
        except asyncio.TimeoutError:
            logger.warning("Notification publish timed out", event_type=event_type, timeout=self.timeout)
        except KafkaError as e:
            logger.error("Failed to publish notification", event_type=event_type, error=str(e))
        except Exception as e:
            logger.error("Unexpected error publishing notification", event_type=event_type, error=str(e))
        notifications_total.labels(status="failed").inc()
        return False

    async def notify_all(self, notifications: Iterable[Notification]):
        for event_type, payload in notifications:
            await self.notify(event_type, payload)


# Global producer instance
notification_producer = NotificationProducer()
