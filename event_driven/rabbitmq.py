"""
RabbitMQ broker backed by pika's BlockingConnection.

The blocking client is not thread-safe, and one connection is shared by the
publisher and every consumer worker in a process, so every channel operation
runs under a single lock. Publisher confirms are enabled: ``publish`` returns
only after the broker has taken the message, and raises BrokerError when it
did not.
"""

import logging
import threading
from typing import Any, Callable, Optional, TypeVar

import pika
from pika.exceptions import AMQPError

from event_driven.broker import ATTEMPTS_HEADER, Broker, Delivery
from shared.errors import BrokerError

logger = logging.getLogger("rabbitmq")

T = TypeVar("T")


class RabbitMQBroker(Broker):
    """
    Broker implementation for RabbitMQ.

    Example:
        broker = RabbitMQBroker(settings.rabbitmq_uri)
        broker.connect()
        broker.declare_exchange("url-events")
    """

    def __init__(self, uri: str, prefetch_count: int = 16, heartbeat: int = 60):
        self._params = pika.URLParameters(uri)
        self._params.heartbeat = heartbeat
        self._prefetch_count = prefetch_count
        self._lock = threading.RLock()
        self._connection: Optional[pika.BlockingConnection] = None
        self._channel = None

    def connect(self) -> None:
        """Open the connection and channel. Called lazily by every operation."""
        with self._lock:
            if self._channel is not None and self._channel.is_open:
                return
            try:
                self._connection = pika.BlockingConnection(self._params)
                self._channel = self._connection.channel()
                self._channel.basic_qos(prefetch_count=self._prefetch_count)
                self._channel.confirm_delivery()
            except AMQPError as e:
                self._connection = None
                self._channel = None
                raise BrokerError(f"Could not connect to RabbitMQ at {self._params.host}: {e!r}") from e
            logger.info(f"Connected to RabbitMQ at {self._params.host}:{self._params.port}")

    def _call(self, operation: Callable[[Any], T]) -> T:
        with self._lock:
            self.connect()
            try:
                return operation(self._channel)
            except AMQPError as e:
                # A failed operation usually closes the channel; the next call reconnects
                if self._channel is not None and not self._channel.is_open:
                    self._channel = None
                raise BrokerError(f"RabbitMQ operation failed: {e!r}") from e

    # -------------------------------------------------------------------------
    # Topology
    # -------------------------------------------------------------------------

    def declare_exchange(self, name: str, exchange_type: str = "topic", durable: bool = True) -> None:
        self._call(lambda ch: ch.exchange_declare(
            exchange=name,
            exchange_type=exchange_type,
            durable=durable,
        ))

    def declare_queue(
        self,
        name: str,
        durable: bool = True,
        dead_letter_exchange: Optional[str] = None,
        dead_letter_routing_key: Optional[str] = None,
    ) -> None:
        arguments = {}
        if dead_letter_exchange is not None:
            arguments["x-dead-letter-exchange"] = dead_letter_exchange
        if dead_letter_routing_key is not None:
            arguments["x-dead-letter-routing-key"] = dead_letter_routing_key
        self._call(lambda ch: ch.queue_declare(queue=name, durable=durable, arguments=arguments or None))

    def bind_queue(self, queue: str, exchange: str, routing_key: str) -> None:
        self._call(lambda ch: ch.queue_bind(queue=queue, exchange=exchange, routing_key=routing_key))

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    def publish(
        self,
        exchange: str,
        routing_key: str,
        body: bytes,
        headers: Optional[dict[str, Any]] = None,
        message_id: Optional[str] = None,
        persistent: bool = True,
    ) -> None:
        properties = pika.BasicProperties(
            content_type="application/json",
            delivery_mode=pika.DeliveryMode.Persistent if persistent else pika.DeliveryMode.Transient,
            message_id=message_id,
            headers=headers or None,
        )
        self._call(lambda ch: ch.basic_publish(
            exchange=exchange,
            routing_key=routing_key,
            body=body,
            properties=properties,
        ))

    # -------------------------------------------------------------------------
    # Consuming
    # -------------------------------------------------------------------------

    def get(self, queue: str) -> Optional[Delivery]:
        method, properties, body = self._call(lambda ch: ch.basic_get(queue=queue, auto_ack=False))
        if method is None:
            return None
        headers = dict(properties.headers or {})
        return Delivery(
            delivery_tag=method.delivery_tag,
            queue=queue,
            exchange=method.exchange,
            routing_key=headers.get("x-original-routing-key", method.routing_key),
            body=body,
            headers=headers,
            message_id=properties.message_id,
            persistent=properties.delivery_mode == pika.DeliveryMode.Persistent.value,
            redelivered=bool(method.redelivered),
            attempts=int(headers.get(ATTEMPTS_HEADER, 0)),
        )

    def ack(self, delivery: Delivery) -> None:
        self._call(lambda ch: ch.basic_ack(delivery_tag=delivery.delivery_tag))

    def reject(self, delivery: Delivery) -> None:
        self._call(lambda ch: ch.basic_reject(delivery_tag=delivery.delivery_tag, requeue=False))

    def requeue(self, delivery: Delivery) -> None:
        """
        Republish a copy with ``x-attempts`` incremented, then ack the original.

        A plain nack-with-requeue cannot carry an attempt count, so the copy
        goes to the queue through the default exchange. If the ack fails after
        the copy was published the message is seen once more, which the
        handlers' idempotency absorbs.
        """
        headers = dict(delivery.headers)
        headers[ATTEMPTS_HEADER] = delivery.attempts + 1
        headers.setdefault("x-original-routing-key", delivery.routing_key)
        with self._lock:
            self.publish(
                "",
                delivery.queue,
                delivery.body,
                headers=headers,
                message_id=delivery.message_id,
                persistent=delivery.persistent,
            )
            self.ack(delivery)

    def recover(self, queue: str) -> int:
        self._call(lambda ch: ch.basic_recover(requeue=True))
        return 0

    def close(self) -> None:
        with self._lock:
            if self._connection is not None and self._connection.is_open:
                try:
                    self._connection.close()
                except AMQPError as e:
                    logger.warning(f"Error closing RabbitMQ connection: {e!r}")
            self._connection = None
            self._channel = None
            logger.info("Disconnected from RabbitMQ")
