"""Request/response over a message broker.

The client sends a request carrying two properties: ``reply_to``, the queue
the answer should go to, and ``correlation_id``, unique to the call. It then
blocks until a reply with the same correlation id shows up, or its deadline
passes. The server consumes the request queue, computes the answer, and
publishes it to ``reply_to`` with the request's correlation id.

A server never leaves a well-formed request unanswered: if the argument is
bad or the handler fails, the reply is the empty error marker, with the
reason in the ``x-error`` header.
"""

from __future__ import annotations

import concurrent.futures
import contextlib
import threading
from typing import Callable, Iterator, Optional

from loguru import logger

from . import config
from .correlate import RpcCorrelator
from .errors import MalformedRequestError
from .transport.base import Delivery, Transport


ERROR_MARKER = ""
ERROR_HEADER = "x-error"


def fib(n: int) -> int:
    if n == 0:
        return 0
    if n == 1:
        return 1
    return fib(n - 1) + fib(n - 2)


def fibonacci(argument: str) -> str:
    """Default request handler: the *argument*-th Fibonacci number."""
    try:
        n = int(argument)
    except (TypeError, ValueError):
        raise MalformedRequestError(f"not an integer: {argument!r}")

    if n < 0:
        raise MalformedRequestError(f"negative argument: {n}")

    return str(fib(n))


class RpcClient:
    """Issue requests to *queue* and block for the matching replies.

    By default every call declares its own exclusive reply queue and
    subscribes to it for the duration of the call. With ``shared_reply`` one
    reply queue is declared up front and reused; replies are told apart by
    correlation id either way.
    """

    def __init__(
        self,
        transport: Transport,
        queue: str = config.RPC_QUEUE,
        timeout: float = config.RPC_TIMEOUT,
        shared_reply: bool = False,
    ):
        self.transport = transport
        self.queue = queue
        self.timeout = timeout
        self.correlator = RpcCorrelator()

        self._reply_to: Optional[str] = None
        self._reply_tag: Optional[str] = None

        if shared_reply:
            self._reply_to = transport.declare_ephemeral_reply_destination()
            self._reply_tag = transport.subscribe(self._reply_to, self._on_reply)

    def call(self, argument, timeout: Optional[float] = None) -> str:
        """Send *argument* and return the decoded reply. Raises
        RpcTimeoutError if no reply arrives within *timeout* seconds."""
        if timeout is None:
            timeout = self.timeout

        body = str(argument).encode("utf-8")

        with self.correlator.pending() as call, self._reply_destination() as reply_to:
            self.transport.send(
                self.queue,
                None,
                body,
                correlation_id=call.correlation_id,
                reply_to=reply_to,
            )
            call.mark_sent()
            logger.debug("requesting {}({!r}), correlation_id={}", self.queue, argument, call.correlation_id)

            reply: Delivery = call.wait(timeout)

        error = reply.headers.get(ERROR_HEADER)
        if error:
            logger.warning("{}({!r}) failed remotely: {}", self.queue, argument, error)

        return reply.body.decode("utf-8", errors="replace")

    @contextlib.contextmanager
    def _reply_destination(self) -> Iterator[str]:
        if self._reply_to is not None:
            yield self._reply_to
            return

        reply_to = self.transport.declare_ephemeral_reply_destination()
        tag = self.transport.subscribe(reply_to, self._on_reply)
        try:
            yield reply_to
        finally:
            self.transport.unsubscribe(tag)

    def _on_reply(self, delivery: Delivery) -> None:
        self.correlator.on_reply(delivery.correlation_id, delivery)

    def close(self) -> None:
        if self._reply_tag is not None:
            self.transport.unsubscribe(self._reply_tag)
            self._reply_tag = None
            self._reply_to = None
        self.correlator.close()

    def __enter__(self) -> "RpcClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class RpcServer:
    """Answer requests arriving on *queue* with *handler(argument)*.

    ``prefetch`` limits the broker to that many unacknowledged requests per
    server, so several servers share the load evenly. With ``workers`` the
    handler runs on a thread pool instead of the transport's delivery thread.
    """

    def __init__(
        self,
        transport: Transport,
        handler: Callable[[str], str] = fibonacci,
        queue: str = config.RPC_QUEUE,
        prefetch: Optional[int] = 1,
        purge: bool = False,
        workers: Optional[int] = None,
    ):
        self.transport = transport
        self.handler = handler
        self.queue = queue
        self.prefetch = prefetch
        self.purge = purge

        self.shutdown = threading.Event()
        self.workers = None
        if workers:
            self.workers = concurrent.futures.ThreadPoolExecutor(max_workers=workers)

        self._tag: Optional[str] = None

    def start(self) -> None:
        self.transport.declare_queue(self.queue, purge=self.purge)
        if self.prefetch:
            self.transport.set_prefetch(self.prefetch)
        self._tag = self.transport.subscribe(self.queue, self._on_request, auto_ack=False)
        logger.bind(event="rpc_server_ready", queue=self.queue).info(
            "awaiting RPC requests on {}", self.queue
        )

    def serve(self, timeout: Optional[float] = None) -> None:
        """Handle requests until :func:`stop` is called, or *timeout*
        seconds pass."""
        if self._tag is None:
            self.start()
        try:
            self.shutdown.wait(timeout)
        finally:
            self.close()

    def stop(self) -> None:
        self.shutdown.set()

    def close(self) -> None:
        if self._tag is not None:
            self.transport.unsubscribe(self._tag)
            self._tag = None
        if self.workers is not None:
            self.workers.shutdown(wait=True)
            self.workers = None

    def __enter__(self) -> "RpcServer":
        if self._tag is None:
            self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()
        self.close()

    # --- internal ---

    def _on_request(self, delivery: Delivery) -> None:
        if self.workers is not None:
            self.workers.submit(self._handle, delivery)
        else:
            self._handle(delivery)

    def _handle(self, delivery: Delivery) -> None:
        if not delivery.reply_to or delivery.correlation_id is None:
            logger.warning(
                "dropping request on {} without reply_to/correlation_id", self.queue
            )
            self.transport.ack(delivery.delivery_tag)
            return

        response = ERROR_MARKER
        headers = {}

        try:
            argument = delivery.body.decode("utf-8")
            response = str(self.handler(argument))
        except UnicodeDecodeError:
            headers[ERROR_HEADER] = "MalformedRequestError: undecodable request body"
        except MalformedRequestError as e:
            headers[ERROR_HEADER] = f"MalformedRequestError: {e}"
        except Exception as e:
            logger.exception("request handler failed on {}", self.queue)
            headers[ERROR_HEADER] = f"{type(e).__name__}: {e}"

        if ERROR_HEADER in headers:
            logger.info("replying with error marker: {}", headers[ERROR_HEADER])

        try:
            self.transport.send(
                delivery.reply_to,
                headers,
                response.encode("utf-8"),
                correlation_id=delivery.correlation_id,
            )
        finally:
            self.transport.ack(delivery.delivery_tag)
