"""RabbitMQ transport with publisher confirms."""

from __future__ import annotations

import concurrent.futures
import itertools
import queue
import threading
from typing import Any, Callable, Dict, List, Optional

import pika
from loguru import logger

from .. import config
from .base import (
    ConfirmCallback,
    Delivery,
    DeliveryCallback,
    Transport,
    TransportConnectionError,
    TransportTimeout,
)


class RabbitTransport(Transport):
    """One AMQP connection and channel, driven by a dedicated I/O thread.

    pika is not thread safe: every channel operation is handed to the I/O
    thread with ``add_callback_threadsafe``. Publishes go through an outbox
    that is drained on that thread, in the order sequence numbers were
    assigned.
    """

    timeout = 10

    def __init__(
        self,
        parameters: Optional[pika.ConnectionParameters] = None,
        confirms: bool = True,
    ):
        self.parameters = parameters or config.broker_params()
        self.confirms = confirms

        self._lock = threading.Lock()
        self._sequence = 0
        self._outbox: queue.Queue = queue.Queue()
        self._ready = threading.Event()
        self._error: Optional[BaseException] = None
        self._closing = False
        self._connection: Optional[pika.SelectConnection] = None
        self._channel = None

        self._confirm_listeners: List[ConfirmCallback] = []
        self._reject_listeners: List[ConfirmCallback] = []

        self._thread = threading.Thread(target=self._run, name="courier-amqp", daemon=True)
        self._thread.start()

        if not self._ready.wait(timeout=self.timeout):
            raise TransportTimeout(
                f"no AMQP channel to {self.parameters.host}:{self.parameters.port} "
                f"in {self.timeout} sec"
            )
        if self._error is not None:
            raise TransportConnectionError(str(self._error))

    @property
    def is_open(self) -> bool:
        return (
            self._channel is not None
            and self._channel.is_open
            and not self._closing
        )

    # --- public interface, any thread ---

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
        properties = pika.BasicProperties(
            headers=headers or None,
            correlation_id=correlation_id,
            reply_to=reply_to,
            delivery_mode=pika.DeliveryMode.Persistent if persistent else None,
        )

        with self._lock:
            self._check_open()
            sequence_number = self._sequence + 1
            if before_send is not None:
                before_send(sequence_number)
            self._sequence = sequence_number
            self._outbox.put((destination, body, properties))

        self._threadsafe(self._flush_outbox)
        return sequence_number

    def next_sequence_number(self) -> int:
        with self._lock:
            return self._sequence + 1

    def add_confirm_listener(
        self, on_confirm: ConfirmCallback, on_reject: ConfirmCallback
    ) -> None:
        self._confirm_listeners.append(on_confirm)
        self._reject_listeners.append(on_reject)

    def remove_confirm_listener(
        self, on_confirm: ConfirmCallback, on_reject: ConfirmCallback
    ) -> None:
        for listeners, listener in (
            (self._confirm_listeners, on_confirm),
            (self._reject_listeners, on_reject),
        ):
            if listener in listeners:
                listeners.remove(listener)

    def subscribe(
        self, destination: str, handler: DeliveryCallback, auto_ack: bool = True
    ) -> str:
        def on_message(_ch, method, properties, body: bytes) -> None:
            handler(
                Delivery(
                    destination=destination,
                    body=body,
                    headers=dict(properties.headers or {}),
                    correlation_id=properties.correlation_id,
                    reply_to=properties.reply_to,
                    delivery_tag=method.delivery_tag,
                )
            )

        def start(future: concurrent.futures.Future) -> None:
            tag = self._channel.basic_consume(
                queue=destination,
                on_message_callback=on_message,
                auto_ack=auto_ack,
                callback=lambda _frame: future.set_result(tag),
            )

        return self._call(start)

    def unsubscribe(self, tag: str) -> None:
        if not self.is_open:
            return
        self._call(
            lambda future: self._channel.basic_cancel(
                consumer_tag=tag,
                callback=lambda _frame: future.set_result(None),
            )
        )

    def ack(self, delivery_tag: int) -> None:
        self._threadsafe(lambda: self._channel.basic_ack(delivery_tag=delivery_tag))

    def declare_ephemeral_reply_destination(self) -> str:
        return self._call(
            lambda future: self._channel.queue_declare(
                queue="",
                exclusive=True,
                auto_delete=True,
                callback=lambda frame: future.set_result(frame.method.queue),
            )
        )

    def declare_queue(self, name: str, purge: bool = False) -> str:
        self._call(
            lambda future: self._channel.queue_declare(
                queue=name,
                callback=lambda frame: future.set_result(frame.method.queue),
            )
        )
        if purge:
            self._call(
                lambda future: self._channel.queue_purge(
                    queue=name,
                    callback=lambda _frame: future.set_result(None),
                )
            )
        return name

    def set_prefetch(self, count: int) -> None:
        self._call(
            lambda future: self._channel.basic_qos(
                prefetch_count=count,
                callback=lambda _frame: future.set_result(None),
            )
        )

    def close(self) -> None:
        if self._closing:
            return
        self._closing = True

        connection = self._connection
        if connection is not None and connection.is_open:
            connection.ioloop.add_callback_threadsafe(connection.close)
        self._thread.join(timeout=self.timeout)

    # --- I/O thread ---

    def _run(self) -> None:
        self._connection = pika.SelectConnection(
            parameters=self.parameters,
            on_open_callback=self._on_connection_open,
            on_open_error_callback=self._on_connection_open_error,
            on_close_callback=self._on_connection_closed,
        )
        self._connection.ioloop.start()

    def _on_connection_open(self, connection) -> None:
        connection.channel(on_open_callback=self._on_channel_open)

    def _on_connection_open_error(self, _connection, error) -> None:
        logger.error("AMQP connection failed: {}", error)
        self._error = error
        self._ready.set()
        self._connection.ioloop.stop()

    def _on_connection_closed(self, _connection, reason) -> None:
        self._channel = None
        if not self._closing:
            logger.warning("AMQP connection closed: {}", reason)
        self._connection.ioloop.stop()

    def _on_channel_open(self, channel) -> None:
        self._channel = channel
        channel.add_on_close_callback(self._on_channel_closed)

        if self.confirms:
            channel.confirm_delivery(
                ack_nack_callback=self._on_delivery_confirmation,
                callback=lambda _frame: self._ready.set(),
            )
        else:
            self._ready.set()

    def _on_channel_closed(self, _channel, reason) -> None:
        if not self._closing:
            logger.warning("AMQP channel closed: {}", reason)
        self._channel = None
        connection = self._connection
        if connection is not None and connection.is_open:
            connection.close()

    def _on_delivery_confirmation(self, frame) -> None:
        method = frame.method
        if isinstance(method, pika.spec.Basic.Ack):
            listeners = self._confirm_listeners
        else:
            listeners = self._reject_listeners

        for listener in list(listeners):
            listener(method.delivery_tag, bool(method.multiple))

    def _flush_outbox(self) -> None:
        """Drain all queued outgoing messages (called on the I/O thread)."""
        while True:
            try:
                destination, body, properties = self._outbox.get_nowait()
            except queue.Empty:
                break

            self._channel.basic_publish(
                exchange="",
                routing_key=destination,
                body=body,
                properties=properties,
            )

    # --- helpers ---

    def _threadsafe(self, callback: Callable[[], None]) -> None:
        self._check_open()
        self._connection.ioloop.add_callback_threadsafe(callback)

    def _call(self, start: Callable[[concurrent.futures.Future], None]):
        """Run *start* on the I/O thread and wait for the broker's answer,
        which *start* is expected to put in the future it is given."""
        future: concurrent.futures.Future = concurrent.futures.Future()

        def invoke() -> None:
            try:
                start(future)
            except Exception as e:
                future.set_exception(e)

        self._threadsafe(invoke)

        try:
            return future.result(timeout=self.timeout)
        except concurrent.futures.TimeoutError:
            raise TransportTimeout(f"no broker response in {self.timeout} sec")

    def _check_open(self) -> None:
        if not self.is_open:
            raise TransportConnectionError(
                f"not connected to AMQP broker at "
                f"{self.parameters.host}:{self.parameters.port}"
            )
