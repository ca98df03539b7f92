"""
Consumer / dispatcher for one queue.

Every delivery goes through the same state machine:

    received -> decoding -> handling -> acknowledged
    received -> decoding-failed -> rejected            (dead-letter queue)
    received -> handling-failed -> retried | dead-lettered

Design decisions:
- This is the only place where exceptions turn into ack / reject / requeue
- A malformed message is terminal: it is rejected without requeue and logged
  with enough context to replay it by hand, and the consumer keeps going
- A handler failure is retried through the broker (requeue with an attempt
  count), never in-process, up to ``max_delivery_attempts``; then the
  message is dead-lettered
- A decoded event with no registered handler is rejected explicitly rather
  than acknowledged and forgotten
- Concurrency is partitioned: each event is handled on the single-thread
  worker owning its partition key (the user id when there is one), so
  handlers for the same user never run at the same time
- Shutdown stops fetching, lets in-flight handlers finish (bounded by a
  timeout) and returns everything unacknowledged to the broker
"""

import logging
import threading
import zlib
from concurrent.futures import Future, ThreadPoolExecutor, wait
from enum import Enum
from typing import Callable, Optional

from event_driven.broker import Broker, Delivery
from event_driven.envelope import EventEnvelope, EventTypes, decode
from shared.config import Settings
from shared.errors import BrokerError, DecodeError, HandlerError

logger = logging.getLogger("consumer")

# Type alias for event handler functions
EventHandler = Callable[[EventEnvelope], None]

_BODY_PREVIEW = 200


class Outcome(str, Enum):
    """How a delivery was settled."""
    ACKNOWLEDGED = "acknowledged"
    REJECTED = "rejected"
    RETRIED = "retried"
    DEAD_LETTERED = "dead-lettered"


class Consumer:
    """
    Pulls deliveries from a queue and dispatches them to handlers by event type.

    Example:
        consumer = Consumer(broker, settings.notification_queue, settings)
        consumer.register(EventTypes.URL_CREATED, handle_url_created)
        consumer.start()
        ...
        consumer.stop()
    """

    def __init__(self, broker: Broker, queue: str, settings: Settings, name: Optional[str] = None):
        self.broker = broker
        self.queue = queue
        self.name = name or queue
        self.max_attempts = settings.max_delivery_attempts
        self.workers = max(1, settings.consumer_workers)
        self.prefetch = max(1, settings.prefetch_count)
        self.poll_interval = settings.poll_interval_seconds
        self.shutdown_timeout = settings.shutdown_timeout_seconds

        self._handlers: dict[str, EventHandler] = {}
        self._stopping = threading.Event()
        self._finished = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._started = False
        self._in_flight: set[Future] = set()
        self._in_flight_lock = threading.Lock()

    # =========================================================================
    # Handler registration
    # =========================================================================

    def register(self, event_type: str, handler: EventHandler) -> None:
        """
        Register the handler for an event type.

        Handlers must be idempotent: delivery is at-least-once. A handler
        signals a retryable failure by raising (HandlerError, or anything
        else); returning normally means the event is done.
        """
        if event_type not in EventTypes.ALL:
            raise ValueError(f"Unknown event type: {event_type}")
        if event_type in self._handlers:
            logger.warning(f"[{self.name}] Replacing handler for '{event_type}'")
        self._handlers[event_type] = handler
        logger.debug(f"[{self.name}] Registered handler for '{event_type}'")

    def handles(self, event_type: str) -> bool:
        return event_type in self._handlers

    # =========================================================================
    # Per-delivery state machine
    # =========================================================================

    def handle_delivery(self, delivery: Delivery) -> Outcome:
        """Decode, dispatch and settle one delivery."""
        event = self._decode(delivery)
        if event is None:
            return Outcome.REJECTED
        return self._dispatch(delivery, event)

    def _decode(self, delivery: Delivery) -> Optional[EventEnvelope]:
        try:
            return decode(delivery.body)
        except DecodeError as e:
            preview = delivery.body[:_BODY_PREVIEW].decode("utf-8", errors="replace")
            logger.error(
                f"[{self.name}] Rejecting undecodable message: {e} | queue={delivery.queue} "
                f"routing_key={delivery.routing_key} tag={delivery.delivery_tag} "
                f"message_id={delivery.message_id} body={preview!r}"
            )
            self._settle(self.broker.reject, delivery)
            return None

    def _dispatch(self, delivery: Delivery, event: EventEnvelope) -> Outcome:
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.warning(f"[{self.name}] No handler for {event}, rejecting")
            self._settle(self.broker.reject, delivery)
            return Outcome.REJECTED

        attempt = delivery.attempts + 1
        try:
            handler(event)
        except Exception as e:
            if not isinstance(e, HandlerError):
                logger.exception(f"[{self.name}] Handler crashed for {event}")
            if attempt < self.max_attempts:
                logger.warning(
                    f"[{self.name}] Handling {event} failed (attempt {attempt}/{self.max_attempts}), "
                    f"requeueing: {e}"
                )
                self._settle(self.broker.requeue, delivery)
                return Outcome.RETRIED
            logger.error(
                f"[{self.name}] Handling {event} failed after {attempt} attempt(s), "
                f"dead-lettering: {e}"
            )
            self._settle(self.broker.reject, delivery)
            return Outcome.DEAD_LETTERED

        self._settle(self.broker.ack, delivery)
        logger.debug(f"[{self.name}] Acknowledged {event}")
        return Outcome.ACKNOWLEDGED

    def _settle(self, operation: Callable[[Delivery], None], delivery: Delivery) -> None:
        # If settling fails the broker still owns the message and will redeliver it
        try:
            operation(delivery)
        except BrokerError as e:
            logger.error(f"[{self.name}] Could not settle delivery {delivery.delivery_tag}: {e}")

    # =========================================================================
    # Inline processing
    # =========================================================================

    def drain(self, limit: Optional[int] = None) -> list[Outcome]:
        """
        Process ready deliveries on the calling thread until the queue is empty.

        Used by tests, the demo and single-process runs. Requeued deliveries
        go to the tail of the queue and are picked up by the same call.
        """
        outcomes = []
        while limit is None or len(outcomes) < limit:
            delivery = self.broker.get(self.queue)
            if delivery is None:
                break
            outcomes.append(self.handle_delivery(delivery))
        return outcomes

    # =========================================================================
    # Long-running consumption
    # =========================================================================

    def partition_for(self, event: EventEnvelope) -> int:
        return zlib.crc32(event.partition_key().encode("utf-8")) % self.workers

    def start(self) -> threading.Thread:
        """Run the consume loop on a background thread."""
        self._started = True
        self._thread = threading.Thread(target=self.run, name=f"consumer-{self.name}", daemon=True)
        self._thread.start()
        return self._thread

    def run(self) -> None:
        """
        Consume until ``stop()`` is called.

        At most ``prefetch_count`` deliveries are in flight at once; each is
        handled on the worker owning its partition.
        """
        self._stopping.clear()
        self._finished.clear()
        self._started = True
        slots = threading.BoundedSemaphore(self.prefetch)
        executors = [
            ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{self.name}-{i}")
            for i in range(self.workers)
        ]
        logger.info(f"[{self.name}] Consuming '{self.queue}' with {self.workers} worker(s)")

        try:
            while not self._stopping.is_set():
                if not slots.acquire(timeout=self.poll_interval):
                    continue
                try:
                    delivery = self.broker.get(self.queue)
                except BrokerError as e:
                    slots.release()
                    logger.error(f"[{self.name}] Fetch from '{self.queue}' failed: {e}")
                    self._stopping.wait(self.poll_interval)
                    continue

                if delivery is None:
                    slots.release()
                    self._stopping.wait(self.poll_interval)
                    continue

                event = self._decode(delivery)
                if event is None:
                    slots.release()
                    continue

                future = executors[self.partition_for(event)].submit(self._dispatch, delivery, event)
                with self._in_flight_lock:
                    self._in_flight.add(future)
                future.add_done_callback(lambda f: self._done(f, slots))
        finally:
            self._shutdown(executors)
            self._finished.set()

    def _done(self, future: Future, slots: threading.BoundedSemaphore) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(future)
        slots.release()

    def _shutdown(self, executors: list[ThreadPoolExecutor]) -> None:
        with self._in_flight_lock:
            pending = set(self._in_flight)
        if pending:
            logger.info(f"[{self.name}] Waiting for {len(pending)} in-flight deliveries")
            _, not_done = wait(pending, timeout=self.shutdown_timeout)
            if not_done:
                logger.warning(f"[{self.name}] {len(not_done)} deliveries unfinished at shutdown timeout")
        for executor in executors:
            executor.shutdown(wait=False, cancel_futures=True)
        try:
            returned = self.broker.recover(self.queue)
        except BrokerError as e:
            logger.error(f"[{self.name}] Could not return unacknowledged deliveries: {e}")
        else:
            if returned:
                logger.info(f"[{self.name}] Returned {returned} unacknowledged deliveries to '{self.queue}'")
        logger.info(f"[{self.name}] Stopped")

    def request_stop(self) -> None:
        """Stop fetching new deliveries. Safe to call from a signal handler."""
        self._stopping.set()

    def stop(self, timeout: Optional[float] = None) -> bool:
        """
        Stop consuming and wait for the loop to finish its shutdown.

        Returns:
            True if the consumer finished within ``timeout``
        """
        self.request_stop()
        if not self._started:
            return True
        if self._thread is not None:
            self._thread.join(timeout)
            return not self._thread.is_alive()
        return self._finished.wait(timeout)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
