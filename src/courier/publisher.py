""" Publishing with broker confirmations. A :class:`ReliablePublisher`
    records each message with its :class:`ConfirmTracker` while the transport
    assigns its sequence number, before it is transmitted; the tracker is
    emptied again by the transport's ack/nack notifications.

    Three strategies are offered:

    * :attr:`Strategy.INDIVIDUAL` waits for every message to be confirmed
      before sending the next one. Simple and slow.
    * :attr:`Strategy.BATCH` sends *batch_size* messages, then waits for the
      whole batch. Faster, but a timeout only says that something in the
      batch went wrong.
    * :attr:`Strategy.ASYNC` sends everything and waits once at the end,
      while confirmations are processed concurrently.

    A rejection or a timeout is never fatal: the outcome is described by the
    returned :class:`PublishResult`, and the caller decides what to retry.
"""

from __future__ import annotations

import collections
import enum
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from loguru import logger

from . import config
from .confirm import ConfirmTracker, PendingConfirm
from .errors import ConfirmTimeoutError, RejectedMessageError
from .transport.base import Transport


class Strategy(enum.Enum):
    INDIVIDUAL = "individual"
    BATCH = "batch"
    ASYNC = "async"


@dataclass
class PublishResult:
    """ Outcome of one :func:`ReliablePublisher.publish` run.

        *published* lists every message handed to the transport; of those,
        *rejected* were nack'd and *outstanding* had no verdict when a drain
        wait timed out. *unsent* holds the payloads that were never
        transmitted because publication stopped early.
    """

    strategy: Strategy
    published: List[PendingConfirm] = field(default_factory=list)
    rejected: List[PendingConfirm] = field(default_factory=list)
    outstanding: List[PendingConfirm] = field(default_factory=list)
    unsent: List[Any] = field(default_factory=list)
    drain_waits: int = 0
    elapsed: float = 0.0
    timeout: Optional[float] = None

    @property
    def confirmed(self) -> List[PendingConfirm]:
        failed = set(entry.sequence_number for entry in self.rejected)
        failed.update(entry.sequence_number for entry in self.outstanding)
        return [entry for entry in self.published if entry.sequence_number not in failed]

    @property
    def timed_out(self) -> bool:
        return bool(self.outstanding)

    @property
    def ok(self) -> bool:
        return not (self.rejected or self.outstanding or self.unsent)

    def retriable(self) -> List[Any]:
        """ Payloads whose delivery is not known to have succeeded, in the
            order they were originally given.
        """

        entries = sorted(self.rejected + self.outstanding, key=lambda entry: entry.sequence_number)
        return [entry.payload for entry in entries] + list(self.unsent)

    def raise_for_failure(self) -> None:
        if self.outstanding or self.unsent:
            raise ConfirmTimeoutError(self.outstanding, self.timeout)
        if self.rejected:
            raise RejectedMessageError(self.rejected)


class ReliablePublisher:
    """ Publish to *destination* over *transport* with confirmations.

        The publisher registers its tracker as the transport's confirm
        listener. Calls to :func:`publish` are serialized; the confirmation
        path runs concurrently on the transport's delivery thread.
    """

    def __init__(
        self,
        transport: Transport,
        destination: str,
        tracker: Optional[ConfirmTracker] = None,
        timeout: float = config.CONFIRM_TIMEOUT,
        batch_size: int = config.BATCH_SIZE,
        persistent: bool = False,
        headers: Optional[Dict[str, Any]] = None,
    ):
        if batch_size < 1:
            raise ValueError('batch_size must be at least 1')

        self.transport = transport
        self.destination = destination
        self.timeout = timeout
        self.batch_size = batch_size
        self.persistent = persistent
        self.headers = headers

        self._owns_tracker = tracker is None
        self.tracker = tracker if tracker is not None else ConfirmTracker()
        self.tracker.add_reject_listener(self._on_rejected)
        transport.add_confirm_listener(self.tracker.on_confirm, self.tracker.on_reject)

        self._publishing = threading.Lock()
        self._rejected: Dict[int, PendingConfirm] = {}
        self._in_flight: Set[int] = set()
        self._rejected_lock = threading.Lock()
        self._stats = collections.Counter()
        self._stats_lock = threading.Lock()


    @property
    def stats(self) -> Dict[str, int]:
        with self._stats_lock:
            return dict(self._stats)


    def publish_one(self, body, timeout: Optional[float] = None) -> PublishResult:
        return self.publish([body], Strategy.INDIVIDUAL, timeout)


    def publish(
        self,
        bodies: Iterable[Any],
        strategy: Strategy = Strategy.ASYNC,
        timeout: Optional[float] = None,
    ) -> PublishResult:
        """ Send every payload in *bodies* using *strategy*. *timeout*
            bounds each drain wait and defaults to the publisher's timeout.
        """

        strategy = Strategy(strategy)
        bodies = list(bodies)
        timeout = self.timeout if timeout is None else timeout
        result = PublishResult(strategy, timeout=timeout)

        with self._publishing:
            begin = time.monotonic()

            try:
                if strategy is Strategy.INDIVIDUAL:
                    self._publish_individually(bodies, result)
                elif strategy is Strategy.BATCH:
                    self._publish_in_batches(bodies, result)
                else:
                    self._publish_asynchronously(bodies, result)
            finally:
                self._settle(result)
                result.elapsed = time.monotonic() - begin

        self._report(result)
        return result


    def _publish_individually(self, bodies, result):

        for index, body in enumerate(bodies):
            result.published.append(self._send(body))

            if not self._drain(result):
                result.unsent = bodies[index + 1:]
                return


    def _publish_in_batches(self, bodies, result):

        outstanding = 0

        for index, body in enumerate(bodies):
            result.published.append(self._send(body))
            outstanding += 1

            if outstanding == self.batch_size:
                outstanding = 0
                if not self._drain(result):
                    result.unsent = bodies[index + 1:]
                    return

        if outstanding > 0:
            self._drain(result)


    def _publish_asynchronously(self, bodies, result):

        for body in bodies:
            result.published.append(self._send(body))

        self._drain(result)


    def _send(self, body) -> PendingConfirm:

        if isinstance(body, (bytes, bytearray)):
            data = bytes(body)
        else:
            data = str(body).encode('utf-8')

        recorded = list()

        def record(sequence_number):
            # Runs under the transport's sequence lock: the entry exists
            # before the message can be confirmed, and no other sender can
            # take this sequence number in between.

            with self._rejected_lock:
                self._in_flight.add(sequence_number)
            recorded.append(self.tracker.record(sequence_number, body))

        try:
            self.transport.send(
                self.destination, self.headers, data,
                persistent=self.persistent, before_send=record,
            )
        except Exception:
            self._forget(entry.sequence_number for entry in recorded)
            raise

        return recorded[0]


    def _drain(self, result) -> bool:

        result.drain_waits += 1
        drained = self.tracker.await_drain(result.timeout)

        if drained:
            return True

        mine = set(entry.sequence_number for entry in result.published)
        result.outstanding = [entry for entry in self.tracker.pending() if entry.sequence_number in mine]

        if not result.outstanding:
            # Everything of ours was confirmed just as the wait expired.
            return True

        logger.warning(
            "{} message(s) unconfirmed after {:.2f} sec", len(result.outstanding), result.timeout
        )
        return False


    def _settle(self, result):
        """ Collect the rejections for this run and drop whatever is still
            pending, so that late confirmations are ignored.
        """

        sequence_numbers = [entry.sequence_number for entry in result.published]
        result.rejected.extend(self._forget(sequence_numbers))

        with self._stats_lock:
            self._stats['published'] += len(result.published)
            self._stats['confirmed'] += len(result.confirmed)
            self._stats['rejected'] += len(result.rejected)
            self._stats['timed_out'] += len(result.outstanding)


    def _forget(self, sequence_numbers):
        """ Drop the given entries from the tracker and from this
            publisher's bookkeeping. Returns those that were rejected.
        """

        sequence_numbers = list(sequence_numbers)
        self.tracker.discard(sequence_numbers)

        rejected = list()

        with self._rejected_lock:
            for sequence_number in sequence_numbers:
                self._in_flight.discard(sequence_number)
                entry = self._rejected.pop(sequence_number, None)
                if entry is not None:
                    rejected.append(entry)

        return rejected


    def _on_rejected(self, entry):

        # A shared tracker also reports rejections for other publishers.

        with self._rejected_lock:
            if entry.sequence_number in self._in_flight:
                self._rejected[entry.sequence_number] = entry


    def _report(self, result):

        logger.bind(
            event='publish_complete',
            strategy=result.strategy.value,
            published=len(result.published),
            rejected=len(result.rejected),
            outstanding=len(result.outstanding),
            unsent=len(result.unsent),
            drain_waits=result.drain_waits,
        ).info(
            "published {:,} message(s) ({}) in {:,.0f} ms",
            len(result.published), result.strategy.value, result.elapsed * 1000,
        )


    def close(self):

        self.transport.remove_confirm_listener(self.tracker.on_confirm, self.tracker.on_reject)
        self.tracker.remove_reject_listener(self._on_rejected)
        if self._owns_tracker:
            self.tracker.close()


    def __enter__(self):
        return self


    def __exit__(self, *exc_info):
        self.close()


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
