"""In-process transport.

Queues live in a dictionary and every delivery, acknowledgment and
confirmation is executed on one background thread, the same way a broker
client library serializes its own callbacks. Useful for tests and for
running clients and servers inside a single process.
"""

from __future__ import annotations

import collections
import itertools
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from loguru import logger

from ..dispatch import Dispatcher
from .base import (
    ConfirmCallback,
    Delivery,
    DeliveryCallback,
    Transport,
    TransportConnectionError,
    TransportError,
)


@dataclass
class _Consumer:
    tag: str
    destination: str
    handler: DeliveryCallback
    auto_ack: bool
    unacked: int = 0


class MemoryTransport(Transport):
    """Loopback broker with publisher confirms.

    With ``auto_confirm`` every published message is acknowledged right after
    it is routed, unless ``reject_if(body)`` says otherwise, in which case it
    is nack'd. Without ``auto_confirm`` the caller drives the outcome through
    :func:`confirm` and :func:`reject`.

    Consumers on a queue are served round robin. After :func:`set_prefetch`,
    a consumer with ``auto_ack=False`` is skipped while it holds that many
    unacknowledged deliveries.
    """

    def __init__(
        self,
        auto_confirm: bool = True,
        reject_if: Optional[Callable[[bytes], bool]] = None,
    ):
        self.auto_confirm = auto_confirm
        self.reject_if = reject_if
        self.prefetch: Optional[int] = None

        self._lock = threading.RLock()
        self._sequence = 0
        self._open = True

        self._queues: Dict[str, Deque[Delivery]] = {}
        self._exclusive: Set[str] = set()
        self._consumers: Dict[str, List[_Consumer]] = {}
        self._by_tag: Dict[str, _Consumer] = {}
        self._unacked: Dict[int, _Consumer] = {}

        self._confirm_listeners: List[ConfirmCallback] = []
        self._reject_listeners: List[ConfirmCallback] = []

        self._consumer_tags = itertools.count(1)
        self._delivery_tags = itertools.count(1)
        self._round_robin = itertools.count()

        self._delivery = Dispatcher("memory-transport")

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def subscriptions(self) -> int:
        with self._lock:
            return len(self._by_tag)

    @property
    def unacked(self) -> int:
        with self._lock:
            return len(self._unacked)

    def queue_names(self) -> List[str]:
        with self._lock:
            return list(self._queues)

    def send(
        self,
        destination: str,
        headers: Optional[Dict[str, Any]],
        body: bytes,
        correlation_id: Optional[str] = None,
        reply_to: Optional[str] = None,
        persistent: bool = False,
        before_send: Optional[Callable[[int], None]] = None,
    ) -> int:
        delivery = Delivery(
            destination=destination,
            body=body,
            headers=dict(headers or {}),
            correlation_id=correlation_id,
            reply_to=reply_to,
        )

        # Assign and enqueue under the same lock so the delivery thread sees
        # messages in sequence number order.

        with self._lock:
            self._check_open()
            sequence_number = self._sequence + 1
            if before_send is not None:
                before_send(sequence_number)
            self._sequence = sequence_number

            self._delivery.post(self._route, delivery)
            if self.auto_confirm:
                self._delivery.post(self._settle, sequence_number, body)

        return sequence_number

    def next_sequence_number(self) -> int:
        with self._lock:
            return self._sequence + 1

    def add_confirm_listener(
        self, on_confirm: ConfirmCallback, on_reject: ConfirmCallback
    ) -> None:
        with self._lock:
            self._confirm_listeners.append(on_confirm)
            self._reject_listeners.append(on_reject)

    def remove_confirm_listener(
        self, on_confirm: ConfirmCallback, on_reject: ConfirmCallback
    ) -> None:
        with self._lock:
            for listeners, listener in (
                (self._confirm_listeners, on_confirm),
                (self._reject_listeners, on_reject),
            ):
                if listener in listeners:
                    listeners.remove(listener)

    def confirm(self, sequence_number: int, multiple: bool = False) -> None:
        """Acknowledge on behalf of the broker."""
        self._delivery.post(self._notify, self._confirm_listeners, sequence_number, multiple)

    def reject(self, sequence_number: int, multiple: bool = False) -> None:
        """Negatively acknowledge on behalf of the broker."""
        self._delivery.post(self._notify, self._reject_listeners, sequence_number, multiple)

    def subscribe(
        self, destination: str, handler: DeliveryCallback, auto_ack: bool = True
    ) -> str:
        with self._lock:
            self._check_open()
            if destination not in self._queues:
                raise TransportError(f"no such queue: {destination}")

            tag = f"ctag-{next(self._consumer_tags)}"
            consumer = _Consumer(tag, destination, handler, auto_ack)
            self._consumers.setdefault(destination, []).append(consumer)
            self._by_tag[tag] = consumer

            self._delivery.post(self._drain_backlog, destination)

        return tag

    def unsubscribe(self, tag: str) -> None:
        with self._lock:
            consumer = self._by_tag.pop(tag, None)
            if consumer is None:
                return

            destination = consumer.destination
            consumers = self._consumers.get(destination, [])
            consumers.remove(consumer)

            # Exclusive reply queues go away with their last consumer.

            if not consumers and destination in self._exclusive:
                self._exclusive.discard(destination)
                self._queues.pop(destination, None)
                self._consumers.pop(destination, None)

    def ack(self, delivery_tag: int) -> None:
        with self._lock:
            consumer = self._unacked.pop(delivery_tag, None)
            if consumer is None:
                raise TransportError(f"unknown delivery tag: {delivery_tag}")
            consumer.unacked -= 1

            if self.prefetch:
                self._delivery.post(self._drain_backlog, consumer.destination)

    def declare_ephemeral_reply_destination(self) -> str:
        name = "amq.gen-" + uuid.uuid4().hex
        with self._lock:
            self._check_open()
            self._queues[name] = collections.deque()
            self._exclusive.add(name)
        return name

    def declare_queue(self, name: str, purge: bool = False) -> str:
        with self._lock:
            self._check_open()
            queue = self._queues.setdefault(name, collections.deque())
            if purge:
                queue.clear()
        return name

    def set_prefetch(self, count: int) -> None:
        """Limit every manual-ack consumer to *count* unacknowledged
        deliveries; 0 lifts the limit. Further messages stay queued until an
        :func:`ack` frees a slot."""
        with self._lock:
            self.prefetch = count
            destinations = list(self._consumers)

        for destination in destinations:
            self._delivery.post(self._drain_backlog, destination)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until everything sent so far has been delivered."""
        return self._delivery.flush(timeout)

    def close(self) -> None:
        with self._lock:
            if not self._open:
                return
            self._open = False
        self._delivery.close(timeout=5)

    # --- delivery thread ---

    def _route(self, delivery: Delivery) -> None:
        with self._lock:
            queue = self._queues.get(delivery.destination)
            if queue is None:
                logger.debug("dropping unroutable message for {}", delivery.destination)
                return
            queue.append(delivery)

        self._drain_backlog(delivery.destination)

    def _drain_backlog(self, destination: str) -> None:
        while True:
            with self._lock:
                queue = self._queues.get(destination)
                if not queue:
                    return
                consumer = self._pick_consumer(destination)
                if consumer is None:
                    return
                delivery = queue.popleft()
                self._assign(consumer, delivery)

            consumer.handler(delivery)

    def _pick_consumer(self, destination: str) -> Optional[_Consumer]:
        consumers = self._consumers.get(destination)
        if not consumers:
            return None

        start = next(self._round_robin)
        for offset in range(len(consumers)):
            consumer = consumers[(start + offset) % len(consumers)]
            if consumer.auto_ack or not self.prefetch or consumer.unacked < self.prefetch:
                return consumer

        return None

    def _assign(self, consumer: _Consumer, delivery: Delivery) -> None:
        # Caller holds the lock.
        delivery.delivery_tag = next(self._delivery_tags)
        if not consumer.auto_ack:
            consumer.unacked += 1
            self._unacked[delivery.delivery_tag] = consumer

    def _settle(self, sequence_number: int, body: bytes) -> None:
        if self.reject_if is not None and self.reject_if(body):
            self._notify(self._reject_listeners, sequence_number, False)
        else:
            self._notify(self._confirm_listeners, sequence_number, False)

    def _notify(
        self, listeners: List[ConfirmCallback], sequence_number: int, multiple: bool
    ) -> None:
        for listener in list(listeners):
            listener(sequence_number, multiple)

    def _check_open(self) -> None:
        if not self._open:
            raise TransportConnectionError("transport is closed")
