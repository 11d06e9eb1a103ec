"""Transport interface.

This is the (small) contract that transport implementations should follow.
The confirmation tracker and the request/response layer only ever talk to a
broker through it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional


# Transport agnostic exceptions

class TransportError(Exception):
    """Base class for all transport-layer errors."""


class TransportTimeout(TransportError):
    """A broker operation did not complete in time."""


class TransportConnectionError(TransportError):
    """The transport could not establish or maintain a connection."""


@dataclass
class Delivery:
    """One message handed to a subscriber."""

    destination: str
    body: bytes
    headers: Dict[str, Any] = field(default_factory=dict)
    correlation_id: Optional[str] = None
    reply_to: Optional[str] = None
    delivery_tag: Optional[int] = None


ConfirmCallback = Callable[[int, bool], None]
DeliveryCallback = Callable[[Delivery], None]


class Transport(ABC):
    """Minimal contract for a broker connection with publisher confirms."""

    @abstractmethod
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
        """Publish *body* to *destination*; return its sequence number.

        *before_send*, if given, is called with the assigned sequence number
        while the channel's sequence lock is held, before the message can be
        transmitted. If it raises, nothing is sent and the number is not
        consumed."""

    @abstractmethod
    def next_sequence_number(self) -> int:
        """Sequence number the next :func:`send` on this channel will get."""

    @abstractmethod
    def add_confirm_listener(
        self, on_confirm: ConfirmCallback, on_reject: ConfirmCallback
    ) -> None:
        """Register callbacks for broker ack and nack notifications. Both are
        called as ``callback(sequence_number, multiple)``."""

    @abstractmethod
    def remove_confirm_listener(
        self, on_confirm: ConfirmCallback, on_reject: ConfirmCallback
    ) -> None:
        """Undo :func:`add_confirm_listener`; unknown callbacks are ignored."""

    @abstractmethod
    def subscribe(
        self, destination: str, handler: DeliveryCallback, auto_ack: bool = True
    ) -> str:
        """Start delivering messages from *destination*; return a tag."""

    @abstractmethod
    def unsubscribe(self, tag: str) -> None:
        """Stop a subscription started with :func:`subscribe`."""

    @abstractmethod
    def ack(self, delivery_tag: int) -> None:
        """Acknowledge a message received with ``auto_ack=False``."""

    @abstractmethod
    def declare_ephemeral_reply_destination(self) -> str:
        """Create a private, auto-deleted queue and return its name."""

    @abstractmethod
    def declare_queue(self, name: str, purge: bool = False) -> str:
        """Make sure a named queue exists, optionally emptying it."""

    def set_prefetch(self, count: int) -> None:
        """Limit unacknowledged deliveries per consumer."""

    @abstractmethod
    def close(self) -> None:
        """Tear down the underlying connection."""

    @property
    def is_open(self) -> bool:
        """Whether the transport is currently connected."""
        return False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
