"""
Kafka Stream Consumer

Consumes ListingCategoryChanged events and hands them to the category
sync service:
- Manual offset commits, one message at a time, in partition order
- Dead-letter topic for malformed and rejected events
- Store failures are retried in place (offset not committed, partition
  rewound) with exponential backoff
- Metrics and structured logging
"""

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

import structlog
from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition
from aiokafka.errors import KafkaConnectionError, KafkaError
from prometheus_client import Counter, Histogram
from pydantic import ValidationError as EventSchemaError

from directory_sync.config import get_settings
from directory_sync.errors import ProjectionError, ValidationError
from directory_sync.ingestion.events import ListingCategoryChanged
from directory_sync.projection.service import CategorySyncService

logger = structlog.get_logger(__name__)


# =============================================================================
# METRICS
# =============================================================================

EVENTS_CONSUMED = Counter(
    "directory_events_consumed_total",
    "Listing category events consumed",
    ["topic", "status"],
)

EVENT_PROCESSING_TIME = Histogram(
    "directory_event_processing_seconds",
    "Time spent projecting one event",
    ["topic"],
)


class MessageOutcome(str, Enum):
    """What to do with a message's offset"""
    PROCESSED = "processed"  # commit
    REJECTED = "rejected"    # dead-letter, then commit
    RETRY = "retry"          # no commit, redeliver


# =============================================================================
# STREAM CONSUMER
# =============================================================================

@dataclass
class ConsumerConfig:
    """Kafka consumer configuration"""
    topic: str
    group_id: str = "directory-category-sync"
    bootstrap_servers: str = "localhost:9092"
    auto_offset_reset: str = "earliest"
    max_poll_records: int = 500
    session_timeout_ms: int = 30000
    heartbeat_interval_ms: int = 10000
    dlq_suffix: str = ".dlq"
    retry_backoff_seconds: float = 1.0
    retry_backoff_max_seconds: float = 30.0

    @classmethod
    def from_settings(cls) -> "ConsumerConfig":
        kafka = get_settings().kafka
        return cls(
            topic=kafka.topics_listing_changes,
            group_id=kafka.consumer_group,
            bootstrap_servers=kafka.bootstrap_servers,
            auto_offset_reset=kafka.auto_offset_reset,
            max_poll_records=kafka.max_poll_records,
            session_timeout_ms=kafka.session_timeout_ms,
            heartbeat_interval_ms=kafka.heartbeat_interval_ms,
            dlq_suffix=kafka.dlq_suffix,
        )

    @property
    def dlq_topic(self) -> str:
        return f"{self.topic}{self.dlq_suffix}"


class ListingEventConsumer:
    """
    Kafka consumer feeding listing mutations to the sync service.

    Example:
        consumer = ListingEventConsumer(sync_service)
        task = asyncio.create_task(consumer.run())
        ...
        await consumer.stop()
    """

    def __init__(self, service: CategorySyncService, config: Optional[ConsumerConfig] = None):
        self.service = service
        self.config = config or ConsumerConfig.from_settings()

        self._consumer: Optional[AIOKafkaConsumer] = None
        self._producer: Optional[AIOKafkaProducer] = None  # dead-letter
        self._running = False
        self._retry_attempts = 0

    def _create_consumer(self) -> AIOKafkaConsumer:
        return AIOKafkaConsumer(
            self.config.topic,
            bootstrap_servers=self.config.bootstrap_servers,
            group_id=self.config.group_id,
            auto_offset_reset=self.config.auto_offset_reset,
            enable_auto_commit=False,
            max_poll_records=self.config.max_poll_records,
            session_timeout_ms=self.config.session_timeout_ms,
            heartbeat_interval_ms=self.config.heartbeat_interval_ms,
            key_deserializer=lambda k: k.decode("utf-8") if k else None,
        )

    def _create_producer(self) -> AIOKafkaProducer:
        return AIOKafkaProducer(
            bootstrap_servers=self.config.bootstrap_servers,
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
            key_serializer=lambda k: k.encode("utf-8") if k else None,
        )

    @staticmethod
    def _decode(raw: Any) -> Any:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        if isinstance(raw, str):
            return json.loads(raw)
        return raw

    async def handle_message(self, raw: Any) -> MessageOutcome:
        """
        Decode, validate and project one message.

        Malformed payloads and rejected mutations are dead-lettered; a store
        failure asks for redelivery.
        """
        topic = self.config.topic
        try:
            data = self._decode(raw)
            event = ListingCategoryChanged.model_validate(data)
        except (UnicodeDecodeError, json.JSONDecodeError, EventSchemaError) as e:
            logger.warning("Undecodable listing event", topic=topic, error=str(e))
            EVENTS_CONSUMED.labels(topic=topic, status="malformed").inc()
            await self._send_to_dlq(raw, "malformed", str(e))
            return MessageOutcome.REJECTED

        log = logger.bind(topic=topic, event_id=event.event_id, listing_id=event.listing_id)
        start = asyncio.get_running_loop().time()
        try:
            result = await self.service.apply(event)
        except ValidationError as e:
            log.warning("Listing event rejected", error=e.message, details=e.details)
            EVENTS_CONSUMED.labels(topic=topic, status="rejected").inc()
            await self._send_to_dlq(data, e.error_code, e.message, e.details)
            return MessageOutcome.REJECTED
        except ProjectionError as e:
            log.error("Listing event projection failed, will redeliver", error=e.message)
            EVENTS_CONSUMED.labels(topic=topic, status="retry").inc()
            return MessageOutcome.RETRY

        EVENT_PROCESSING_TIME.labels(topic=topic).observe(asyncio.get_running_loop().time() - start)
        EVENTS_CONSUMED.labels(topic=topic, status="processed").inc()
        log.debug("Listing event projected", changed=result.changed)
        return MessageOutcome.PROCESSED

    async def _send_to_dlq(
        self,
        data: Any,
        reason: str,
        error: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Send a failed event to the dead-letter topic"""
        if not self._producer:
            return

        if isinstance(data, (bytes, bytearray)):
            data = data.decode("utf-8", errors="replace")

        dlq_message = {
            "original_topic": self.config.topic,
            "original_data": data,
            "reason": reason,
            "error": error,
            "details": details or {},
            "failed_at": datetime.utcnow().isoformat(),
        }
        try:
            await self._producer.send_and_wait(self.config.dlq_topic, value=dlq_message)
            logger.info("Sent event to DLQ", topic=self.config.dlq_topic, reason=reason)
        except KafkaError as e:
            logger.error("Failed to send to DLQ", topic=self.config.dlq_topic, error=str(e))

    def _retry_delay(self) -> float:
        delay = self.config.retry_backoff_seconds * (2 ** max(self._retry_attempts - 1, 0))
        return min(delay, self.config.retry_backoff_max_seconds)

    async def run(self) -> None:
        """Consume until stopped"""
        logger.info(
            "Starting listing event consumer",
            topic=self.config.topic,
            group_id=self.config.group_id,
        )

        self._consumer = self._create_consumer()
        self._producer = self._create_producer()
        await self._consumer.start()
        await self._producer.start()
        self._running = True

        try:
            async for message in self._consumer:
                if not self._running:
                    break

                outcome = await self.handle_message(message.value)
                if outcome is MessageOutcome.RETRY:
                    self._retry_attempts += 1
                    delay = self._retry_delay()
                    logger.info(
                        "Rewinding partition for redelivery",
                        partition=message.partition,
                        offset=message.offset,
                        attempt=self._retry_attempts,
                        delay_seconds=delay,
                    )
                    self._consumer.seek(TopicPartition(message.topic, message.partition), message.offset)
                    await asyncio.sleep(delay)
                    continue

                self._retry_attempts = 0
                await self._consumer.commit()

        except KafkaConnectionError as e:
            logger.error("Kafka connection error", error=str(e))
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the consumer gracefully"""
        if not self._running and self._consumer is None:
            return
        logger.info("Stopping listing event consumer")
        self._running = False

        if self._consumer:
            await self._consumer.stop()
            self._consumer = None
        if self._producer:
            await self._producer.stop()
            self._producer = None

        logger.info("Listing event consumer stopped")
