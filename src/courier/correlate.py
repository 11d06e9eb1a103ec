""" Request/response correlation. Each outstanding call owns a single-use
    result slot keyed by its correlation id; replies arriving on the
    transport's delivery thread are matched against those slots and
    deposited at most once.
"""

from __future__ import annotations

import concurrent.futures
import contextlib
import enum
import threading
import uuid
from typing import Dict, Iterator, Optional

from loguru import logger

from .dispatch import Dispatcher
from .errors import RpcTimeoutError


class CallState(enum.Enum):
    CREATED = "created"
    SENT = "sent"
    WAITING = "waiting"
    RESOLVED = "resolved"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


_FINAL = (CallState.RESOLVED, CallState.TIMED_OUT, CallState.CANCELLED)


def new_correlation_id() -> str:
    return str(uuid.uuid4())


class PendingCall:
    """Single-assignment result slot for one outstanding call."""

    def __init__(self, correlation_id: str):
        self.correlation_id = correlation_id
        self.state = CallState.CREATED
        self._future: concurrent.futures.Future = concurrent.futures.Future()
        self._lock = threading.Lock()

    @property
    def done(self) -> bool:
        return self.state in _FINAL

    def mark_sent(self) -> None:
        with self._lock:
            if self.state is CallState.CREATED:
                self.state = CallState.SENT

    def deliver(self, result) -> bool:
        """Deposit *result*. Only the first deposit counts; returns False for
        any later one, or if the call already timed out or was cancelled."""
        with self._lock:
            if self.done:
                return False
            self.state = CallState.RESOLVED
            self._future.set_result(result)
            return True

    def cancel(self) -> bool:
        with self._lock:
            if self.done:
                return False
            self.state = CallState.CANCELLED
            self._future.cancel()
            return True

    def wait(self, timeout: Optional[float] = None):
        """Block until the result arrives. Raises RpcTimeoutError if it does
        not arrive within *timeout* seconds."""
        with self._lock:
            if self.state is CallState.SENT:
                self.state = CallState.WAITING

        try:
            return self._future.result(timeout)
        except concurrent.futures.TimeoutError:
            pass
        except concurrent.futures.CancelledError:
            raise RpcTimeoutError(self.correlation_id, timeout)

        with self._lock:
            if self.state is not CallState.RESOLVED:
                self.state = CallState.TIMED_OUT
                self._future.cancel()
                raise RpcTimeoutError(self.correlation_id, timeout)

        # The reply landed between the timeout and the lock.
        return self._future.result()


class RpcCorrelator:
    """Mapping of correlation id to :class:`PendingCall`.

    :func:`on_reply` is the transport-facing entry point; replies are posted
    to a private dispatcher and matched there, one at a time.
    """

    def __init__(self):
        self._pending: Dict[str, PendingCall] = {}
        self._lock = threading.Lock()
        self._dispatcher = Dispatcher("rpc-correlator")

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def __contains__(self, correlation_id: str) -> bool:
        with self._lock:
            return correlation_id in self._pending

    def register(self, correlation_id: Optional[str] = None) -> PendingCall:
        if correlation_id is None:
            correlation_id = new_correlation_id()

        call = PendingCall(correlation_id)
        with self._lock:
            if correlation_id in self._pending:
                raise ValueError(f"correlation id already pending: {correlation_id}")
            self._pending[correlation_id] = call
        return call

    def discard(self, correlation_id: str) -> Optional[PendingCall]:
        with self._lock:
            call = self._pending.pop(correlation_id, None)
        if call is not None:
            call.cancel()
        return call

    @contextlib.contextmanager
    def pending(self, correlation_id: Optional[str] = None) -> Iterator[PendingCall]:
        """Register a call for the duration of the block; the slot is removed
        on every exit path, including timeouts and interrupts."""
        call = self.register(correlation_id)
        try:
            yield call
        finally:
            self.discard(call.correlation_id)

    def deliver(self, correlation_id: Optional[str], result) -> bool:
        """Match a reply against the outstanding calls. Replies for unknown,
        expired or already resolved ids are dropped."""
        with self._lock:
            call = self._pending.pop(correlation_id, None)

        if call is None:
            logger.debug("discarding unmatched reply: correlation_id={}", correlation_id)
            return False

        return call.deliver(result)

    def on_reply(self, correlation_id: Optional[str], result) -> None:
        self._dispatcher.post(self.deliver, correlation_id, result)

    def flush(self, timeout: Optional[float] = None) -> bool:
        return self._dispatcher.flush(timeout)

    def close(self) -> None:
        with self._lock:
            calls = list(self._pending.values())
            self._pending.clear()
        for call in calls:
            call.cancel()
        self._dispatcher.close()
