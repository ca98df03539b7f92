"""
Message broker abstraction.

Publishers and consumers talk to the broker only through the Broker
interface, so the same code runs against RabbitMQ in production
(event_driven.rabbitmq) and against InMemoryBroker in tests, the demo and
single-process runs.

InMemoryBroker follows AMQP semantics closely enough for the consumers'
guarantees to be tested for real:
- Topic exchanges with ``*`` (exactly one word) and ``#`` (zero or more words)
- Idempotent declarations; redeclaring with different properties fails
- Durable queues and persistent messages survive ``restart()``, the rest don't
- Unacknowledged deliveries go back to their queue on ``recover()``/restart
- Queues may name a dead-letter exchange that receives rejected messages
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field, replace
from itertools import count
from typing import Any, Optional

from shared.errors import BrokerError

logger = logging.getLogger("broker")

ATTEMPTS_HEADER = "x-attempts"


@dataclass(frozen=True)
class Delivery:
    """
    A message handed to a consumer, awaiting ack / reject / requeue.

    Attributes:
        delivery_tag: Broker-assigned handle used to settle the delivery
        queue: Queue it was taken from
        attempts: How many times it has been handed out before this one
    """
    delivery_tag: int
    queue: str
    exchange: str
    routing_key: str
    body: bytes
    headers: dict[str, Any] = field(default_factory=dict)
    message_id: Optional[str] = None
    persistent: bool = True
    redelivered: bool = False
    attempts: int = 0


class Broker(ABC):
    """The operations publishers and consumers need from a broker."""

    @abstractmethod
    def declare_exchange(self, name: str, exchange_type: str = "topic", durable: bool = True) -> None:
        """Declare an exchange. Redeclaring with the same properties is a no-op."""

    @abstractmethod
    def declare_queue(
        self,
        name: str,
        durable: bool = True,
        dead_letter_exchange: Optional[str] = None,
        dead_letter_routing_key: Optional[str] = None,
    ) -> None:
        """Declare a queue. Redeclaring with the same properties is a no-op."""

    @abstractmethod
    def bind_queue(self, queue: str, exchange: str, routing_key: str) -> None:
        """Bind a queue to an exchange with a routing-key pattern."""

    @abstractmethod
    def publish(
        self,
        exchange: str,
        routing_key: str,
        body: bytes,
        headers: Optional[dict[str, Any]] = None,
        message_id: Optional[str] = None,
        persistent: bool = True,
    ) -> None:
        """Hand a message to an exchange. Raises BrokerError when the broker refuses it."""

    @abstractmethod
    def get(self, queue: str) -> Optional[Delivery]:
        """Take the next message from a queue, or None if it is empty."""

    @abstractmethod
    def ack(self, delivery: Delivery) -> None:
        """The delivery was fully handled; forget it."""

    @abstractmethod
    def reject(self, delivery: Delivery) -> None:
        """Reject without requeue. Goes to the queue's dead-letter exchange, if any."""

    @abstractmethod
    def requeue(self, delivery: Delivery) -> None:
        """Put the delivery back on its queue with its attempt count incremented."""

    @abstractmethod
    def recover(self, queue: str) -> int:
        """Return every unacknowledged delivery of ``queue`` for redelivery."""

    def close(self) -> None:
        """Release the connection."""


# =============================================================================
# Topic Matching
# =============================================================================

def topic_matches(pattern: str, routing_key: str) -> bool:
    """
    AMQP topic match.

    ``*`` matches exactly one dot-separated word, ``#`` matches zero or more.
    """
    return _match(pattern.split("."), routing_key.split("."))


def _match(pattern: list[str], words: list[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match(rest, words[1:])
    return False


# =============================================================================
# In-Memory Broker
# =============================================================================

@dataclass
class _Exchange:
    exchange_type: str
    durable: bool
    bindings: list[tuple[str, str]] = field(default_factory=list)  # (pattern, queue)


@dataclass
class _Queue:
    durable: bool
    dead_letter_exchange: Optional[str]
    dead_letter_routing_key: Optional[str]
    messages: deque = field(default_factory=deque)
    unacked: dict[int, Delivery] = field(default_factory=dict)


class InMemoryBroker(Broker):
    """
    Thread-safe, single-process broker with AMQP topic semantics.

    Example:
        broker = InMemoryBroker()
        broker.declare_exchange("url-events")
        broker.declare_queue("analytics-events")
        broker.bind_queue("analytics-events", "url-events", "url.*")
        broker.publish("url-events", "url.redirect", b"{...}")
        delivery = broker.get("analytics-events")
        broker.ack(delivery)
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._exchanges: dict[str, _Exchange] = {}
        self._queues: dict[str, _Queue] = {}
        self._tags = count(1)
        self.published_count = 0

    # -------------------------------------------------------------------------
    # Topology
    # -------------------------------------------------------------------------

    def declare_exchange(self, name: str, exchange_type: str = "topic", durable: bool = True) -> None:
        if exchange_type not in ("topic", "direct", "fanout"):
            raise BrokerError(f"Unsupported exchange type: {exchange_type}")
        with self._lock:
            existing = self._exchanges.get(name)
            if existing is None:
                self._exchanges[name] = _Exchange(exchange_type=exchange_type, durable=durable)
                logger.debug(f"Declared exchange '{name}' ({exchange_type}, durable={durable})")
                return
            if (existing.exchange_type, existing.durable) != (exchange_type, durable):
                raise BrokerError(
                    f"PRECONDITION_FAILED - exchange '{name}' already declared as "
                    f"{existing.exchange_type} durable={existing.durable}"
                )

    def declare_queue(
        self,
        name: str,
        durable: bool = True,
        dead_letter_exchange: Optional[str] = None,
        dead_letter_routing_key: Optional[str] = None,
    ) -> None:
        with self._lock:
            existing = self._queues.get(name)
            wanted = (durable, dead_letter_exchange, dead_letter_routing_key)
            if existing is None:
                self._queues[name] = _Queue(*wanted)
                logger.debug(f"Declared queue '{name}' (durable={durable}, dlx={dead_letter_exchange})")
                return
            have = (existing.durable, existing.dead_letter_exchange, existing.dead_letter_routing_key)
            if have != wanted:
                raise BrokerError(f"PRECONDITION_FAILED - queue '{name}' already declared with {have}")

    def bind_queue(self, queue: str, exchange: str, routing_key: str) -> None:
        with self._lock:
            ex = self._require_exchange(exchange)
            self._require_queue(queue)
            if (routing_key, queue) not in ex.bindings:
                ex.bindings.append((routing_key, queue))
                logger.debug(f"Bound queue '{queue}' to '{exchange}' with '{routing_key}'")

    def _require_exchange(self, name: str) -> _Exchange:
        ex = self._exchanges.get(name)
        if ex is None:
            raise BrokerError(f"NOT_FOUND - no exchange '{name}'")
        return ex

    def _require_queue(self, name: str) -> _Queue:
        q = self._queues.get(name)
        if q is None:
            raise BrokerError(f"NOT_FOUND - no queue '{name}'")
        return q

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
        with self._lock:
            targets = self._route(exchange, routing_key)
            for queue_name in targets:
                self._queues[queue_name].messages.append(Delivery(
                    delivery_tag=0,
                    queue=queue_name,
                    exchange=exchange,
                    routing_key=routing_key,
                    body=body,
                    headers=dict(headers or {}),
                    message_id=message_id,
                    persistent=persistent,
                    attempts=int((headers or {}).get(ATTEMPTS_HEADER, 0)),
                ))
            self.published_count += 1
        if not targets:
            logger.debug(f"Message to '{exchange}' with key '{routing_key}' was unroutable")

    def _route(self, exchange: str, routing_key: str) -> list[str]:
        if exchange == "":
            # Default exchange: routing key is the queue name
            return [routing_key] if routing_key in self._queues else []
        ex = self._require_exchange(exchange)
        targets: list[str] = []
        for pattern, queue_name in ex.bindings:
            if queue_name in targets or queue_name not in self._queues:
                continue
            if ex.exchange_type == "fanout":
                matched = True
            elif ex.exchange_type == "direct":
                matched = pattern == routing_key
            else:
                matched = topic_matches(pattern, routing_key)
            if matched:
                targets.append(queue_name)
        return targets

    # -------------------------------------------------------------------------
    # Consuming
    # -------------------------------------------------------------------------

    def get(self, queue: str) -> Optional[Delivery]:
        with self._lock:
            q = self._require_queue(queue)
            if not q.messages:
                return None
            message = q.messages.popleft()
            delivery = replace(message, delivery_tag=next(self._tags))
            q.unacked[delivery.delivery_tag] = delivery
            return delivery

    def _settle(self, delivery: Delivery) -> _Queue:
        q = self._require_queue(delivery.queue)
        if q.unacked.pop(delivery.delivery_tag, None) is None:
            raise BrokerError(f"PRECONDITION_FAILED - unknown delivery tag {delivery.delivery_tag}")
        return q

    def ack(self, delivery: Delivery) -> None:
        with self._lock:
            self._settle(delivery)

    def reject(self, delivery: Delivery) -> None:
        with self._lock:
            q = self._settle(delivery)
            if q.dead_letter_exchange is None:
                logger.warning(f"Dropped rejected message {delivery.message_id} from '{delivery.queue}'")
                return
            headers = dict(delivery.headers)
            headers["x-death-queue"] = delivery.queue
            headers["x-death-routing-key"] = delivery.routing_key
            self.publish(
                q.dead_letter_exchange,
                q.dead_letter_routing_key or delivery.routing_key,
                delivery.body,
                headers=headers,
                message_id=delivery.message_id,
                persistent=delivery.persistent,
            )

    def requeue(self, delivery: Delivery) -> None:
        with self._lock:
            q = self._settle(delivery)
            headers = dict(delivery.headers)
            headers[ATTEMPTS_HEADER] = delivery.attempts + 1
            q.messages.append(replace(
                delivery,
                delivery_tag=0,
                headers=headers,
                redelivered=True,
                attempts=delivery.attempts + 1,
            ))

    def recover(self, queue: str) -> int:
        with self._lock:
            q = self._require_queue(queue)
            pending = sorted(q.unacked.values(), key=lambda d: d.delivery_tag)
            q.unacked.clear()
            for delivery in reversed(pending):
                q.messages.appendleft(replace(delivery, delivery_tag=0, redelivered=True))
            return len(pending)

    # -------------------------------------------------------------------------
    # Inspection / simulation
    # -------------------------------------------------------------------------

    def queue_depth(self, queue: str) -> int:
        """Ready messages waiting on a queue."""
        with self._lock:
            return len(self._require_queue(queue).messages)

    def unacked_count(self, queue: str) -> int:
        with self._lock:
            return len(self._require_queue(queue).unacked)

    def peek(self, queue: str) -> list[Delivery]:
        """Ready messages on a queue, without taking them."""
        with self._lock:
            return list(self._require_queue(queue).messages)

    def has_exchange(self, name: str) -> bool:
        with self._lock:
            return name in self._exchanges

    def has_queue(self, name: str) -> bool:
        with self._lock:
            return name in self._queues

    def restart(self) -> None:
        """
        Simulate a broker restart.

        Transient exchanges, transient queues and non-persistent messages are
        lost; unacknowledged persistent messages are redelivered.
        """
        with self._lock:
            self._exchanges = {n: e for n, e in self._exchanges.items() if e.durable}
            for ex in self._exchanges.values():
                ex.bindings = [(p, q) for p, q in ex.bindings if self._queues.get(q) and self._queues[q].durable]
            survivors = {}
            for name, q in self._queues.items():
                if not q.durable:
                    continue
                pending = sorted(q.unacked.values(), key=lambda d: d.delivery_tag)
                kept = [replace(d, delivery_tag=0, redelivered=True) for d in pending if d.persistent]
                kept += [m for m in q.messages if m.persistent]
                survivors[name] = _Queue(
                    durable=True,
                    dead_letter_exchange=q.dead_letter_exchange,
                    dead_letter_routing_key=q.dead_letter_routing_key,
                    messages=deque(kept),
                )
            self._queues = survivors
        logger.info("In-memory broker restarted")
