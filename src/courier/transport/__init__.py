"""Transport layer implementations."""

from .. import config
from .base import (
    Delivery,
    Transport,
    TransportError,
    TransportTimeout,
    TransportConnectionError,
)
from .memory import MemoryTransport


def connect(backend=None, **kwargs) -> Transport:
    """Open a transport for *backend*, ``COURIER_TRANSPORT`` by default."""

    backend = backend or config.TRANSPORT

    if backend == "rabbitmq":
        from .rabbitmq import RabbitTransport
        return RabbitTransport(**kwargs)
    elif backend == "memory":
        return MemoryTransport(**kwargs)
    else:
        raise ValueError(f"unknown COURIER_TRANSPORT backend: {backend!r}")
