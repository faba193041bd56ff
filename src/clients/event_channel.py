"""Dependency providers for the Kafka event channel and bundle consumer."""

from aiokafka import AIOKafkaConsumer

from src.services.event_channel import BundleConsumer, BundleHandler, EventChannel
from src.settings import settings

_event_channel: EventChannel | None = None


def get_event_channel() -> EventChannel:
    """Get or create the EventChannel singleton."""
    global _event_channel
    if _event_channel is None:
        _event_channel = EventChannel(
            settings.kafka_bootstrap_servers,
            settings.kafka_client_id,
            retries=settings.kafka_publish_retries,
            retry_backoff=settings.kafka_retry_backoff,
        )
    return _event_channel


async def close_event_channel() -> None:
    """Stop the producer if one was started."""
    global _event_channel
    if _event_channel is not None:
        await _event_channel.close()
        _event_channel = None


def create_bundle_consumer(handler: BundleHandler) -> BundleConsumer:
    """Create the consumer of the asynchronous matching topic."""
    consumer = AIOKafkaConsumer(
        settings.kafka_async_bundle_topic,
        bootstrap_servers=settings.kafka_bootstrap_servers.split(","),
        client_id=settings.kafka_client_id,
        group_id=settings.kafka_consumer_group,
        enable_auto_commit=False,
        auto_offset_reset="earliest",
    )
    return BundleConsumer(
        consumer,
        get_event_channel(),
        handler,
        dead_letter_topic=settings.kafka_error_topic,
    )
