"""
Kafka event channel.

EventChannel publishes bundles to topics with bounded retries. BundleConsumer
drives the asynchronous matching flow: each message is handled with the
consumer's partitions paused, so at most one bundle is in flight, and a
failed run is dead-lettered with the original message bytes before the
offset is committed and consumption resumes.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Protocol

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.exceptions import MediatorError, PublishError

logger = logging.getLogger(__name__)


class BundleOutcome(Protocol):
    """Anything reporting whether a pipeline run failed."""

    @property
    def failed(self) -> bool: ...


BundleHandler = Callable[[dict[str, Any]], Awaitable[BundleOutcome]]


def encode_message(value: bytes | str | dict[str, Any]) -> bytes:
    """Encode a message value; bytes pass through untouched."""
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8")
    return json.dumps(value).encode("utf-8")


class EventChannel:
    """Kafka producer wrapper with retrying publishes."""

    def __init__(
        self,
        bootstrap_servers: str,
        client_id: str,
        retries: int = 3,
        retry_backoff: float = 0.5,
        producer: AIOKafkaProducer | None = None,
    ):
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self.retries = max(1, retries)
        self.retry_backoff = retry_backoff
        self._producer = producer
        self._started = False
        self._start_lock = asyncio.Lock()

    async def _get_producer(self) -> AIOKafkaProducer:
        """Get or create the started producer."""
        async with self._start_lock:
            if self._producer is None:
                self._producer = AIOKafkaProducer(
                    bootstrap_servers=self.bootstrap_servers.split(","),
                    client_id=self.client_id,
                )
            if not self._started:
                await self._producer.start()
                self._started = True
        return self._producer

    async def close(self) -> None:
        """Stop the producer."""
        if self._producer is not None and self._started:
            await self._producer.stop()
            self._started = False

    async def publish(self, topic: str, value: bytes | str | dict[str, Any]) -> None:
        """
        Publish a message, retrying with exponential backoff.

        Args:
            topic: Destination topic
            value: Raw bytes (sent verbatim), a string or a JSON-serializable dict

        Raises:
            PublishError: If every attempt fails
        """
        payload = encode_message(value)
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.retries),
                wait=wait_exponential(multiplier=self.retry_backoff),
                retry=retry_if_exception_type(KafkaError),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    producer = await self._get_producer()
                    await producer.send_and_wait(topic, payload)
        except KafkaError as e:
            raise PublishError(
                f"Failed to publish to {topic} after {self.retries} attempts: {e}"
            ) from e
        logger.debug("Published %d bytes to %s", len(payload), topic)


class BundleConsumer:
    """Sequential consumer of the asynchronous bundle topic."""

    def __init__(
        self,
        consumer: AIOKafkaConsumer,
        channel: EventChannel,
        handler: BundleHandler,
        dead_letter_topic: str,
    ):
        self._consumer = consumer
        self._channel = channel
        self._handler = handler
        self._dead_letter_topic = dead_letter_topic

    async def run(self) -> None:
        """Consume messages until cancelled or dead-lettering fails."""
        await self._consumer.start()
        logger.info("Kafka consumer started")
        try:
            async for message in self._consumer:
                await self.handle_message(message)
        except PublishError:
            logger.exception(
                "Dead-lettering failed, stopping consumer so the message is redelivered"
            )
            raise
        finally:
            await self._consumer.stop()
            logger.info("Kafka consumer stopped")

    async def handle_message(self, message: Any) -> None:
        """
        Run the matching pipeline for one message.

        Raises:
            PublishError: If a failed run cannot be dead-lettered; the offset is
                left uncommitted
        """
        logger.info("FHIR bundle received from queue")
        partitions = self._consumer.assignment()
        self._consumer.pause(*partitions)
        try:
            await self._process(message.value)
            await self._consumer.commit()
        finally:
            self._consumer.resume(*partitions)

    async def _process(self, raw: bytes | None) -> None:
        if not raw:
            logger.error("Invalid FHIR bundle received from Kafka: empty message")
            return

        try:
            bundle = json.loads(raw)
        except (ValueError, UnicodeDecodeError):
            logger.error("Invalid FHIR bundle received from Kafka: not JSON")
            await self._dead_letter(raw)
            return

        if not isinstance(bundle, dict):
            logger.error("Invalid FHIR bundle received from Kafka: not a JSON object")
            await self._dead_letter(raw)
            return

        try:
            outcome = await self._handler(bundle)
            failed = outcome.failed
        except MediatorError as e:
            logger.error("Asynchronous matching raised: %s", e)
            failed = True
        except Exception:
            logger.exception("Asynchronous matching crashed on a queued bundle")
            failed = True

        if failed:
            await self._dead_letter(raw)

    async def _dead_letter(self, raw: bytes) -> None:
        logger.warning("Sending bundle to dead-letter topic %s", self._dead_letter_topic)
        await self._channel.publish(self._dead_letter_topic, raw)
