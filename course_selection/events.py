import json
import logging

import pika
from pika.exceptions import AMQPError

logger = logging.getLogger("course-selection.events")

EXCHANGE = "ums_events"
ENROLLMENT_EVENTS = "enrollment.events"
CATALOG_EVENTS = "catalog.events"


def publish_event(rabbitmq_url: str, routing_key: str, event: dict):
    params = pika.URLParameters(rabbitmq_url)
    connection = pika.BlockingConnection(params)
    try:
        channel = connection.channel()
        channel.exchange_declare(exchange=EXCHANGE, exchange_type="topic", durable=True)
        body = json.dumps(event, default=str)
        channel.basic_publish(
            exchange=EXCHANGE,
            routing_key=routing_key,
            body=body,
            properties=pika.BasicProperties(content_type="application/json", delivery_mode=2),
        )
    finally:
        connection.close()


class EventPublisher:
    """Publishes domain events; an empty url turns publishing off."""

    def __init__(self, rabbitmq_url: str):
        self.rabbitmq_url = rabbitmq_url

    @property
    def enabled(self):
        return bool(self.rabbitmq_url)

    def publish(self, routing_key: str, event_type: str, payload: dict):
        if not self.enabled:
            logger.debug("Event publishing disabled, skipping %s", event_type)
            return
        try:
            publish_event(self.rabbitmq_url, routing_key, {"type": event_type, "payload": payload})
        except AMQPError as e:
            logger.warning("Could not publish %s to %s: %s", event_type, routing_key, e)
