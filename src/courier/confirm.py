""" Publisher confirmation tracking. Every message handed to the transport
    is recorded here, keyed by the sequence number the transport assigns it,
    and removed again when the broker acknowledges or rejects it.

    Brokers are allowed to confirm cumulatively ("everything up to and
    including N"), so the pending entries are kept in sequence order and a
    cumulative confirmation removes a leading run of keys in one step.
"""

import bisect
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List

from loguru import logger

from .dispatch import Dispatcher


@dataclass(frozen=True)
class PendingConfirm:
    sequence_number: int
    payload: Any = None


class ConfirmTracker:
    """ Outstanding published messages awaiting a broker verdict.

        The publishing thread calls :func:`record` before each transmission.
        Confirmations arrive via :func:`on_confirm` and :func:`on_reject`,
        which are safe to call from the transport's own delivery thread; they
        are posted to a private :class:`Dispatcher` so that all removals are
        performed by a single thread. :func:`resolve_single` and
        :func:`resolve_cumulative` perform the removal directly.
    """

    def __init__(self):

        self._keys: List[int] = []
        self._entries: Dict[int, PendingConfirm] = {}
        self._changed = threading.Condition()
        self._reject_listeners: List[Callable[[PendingConfirm], None]] = []
        self._dispatcher = Dispatcher('confirm-tracker')


    def __len__(self):
        with self._changed:
            return len(self._keys)


    def __contains__(self, sequence_number):
        with self._changed:
            return sequence_number in self._entries


    def record(self, sequence_number, payload=None):
        """ Register a message that is about to be handed to the transport.
        """

        sequence_number = int(sequence_number)
        entry = PendingConfirm(sequence_number, payload)

        with self._changed:
            if sequence_number in self._entries:
                raise ValueError('sequence number already pending: ' + str(sequence_number))

            self._entries[sequence_number] = entry

            # Sequence numbers normally arrive in increasing order; only
            # pay for the search when they don't.

            if not self._keys or sequence_number > self._keys[-1]:
                self._keys.append(sequence_number)
            else:
                bisect.insort(self._keys, sequence_number)

        return entry


    def resolve_single(self, sequence_number):
        """ Remove exactly one entry. Unknown sequence numbers are ignored;
            a confirmation may legitimately arrive after the entry was
            discarded. Returns the removed entries, if any, as a list.
        """

        with self._changed:
            entry = self._entries.pop(sequence_number, None)
            if entry is None:
                return []

            index = bisect.bisect_left(self._keys, sequence_number)
            del self._keys[index]

            self._notify_if_empty()

        return [entry]


    def resolve_cumulative(self, sequence_number):
        """ Remove every entry with a sequence number less than or equal to
            *sequence_number*. Returns the removed entries in order.
        """

        with self._changed:
            index = bisect.bisect_right(self._keys, sequence_number)
            resolved = self._keys[:index]
            del self._keys[:index]

            entries = [self._entries.pop(key) for key in resolved]
            self._notify_if_empty()

        return entries


    def resolve(self, sequence_number, multiple=False):
        if multiple:
            return self.resolve_cumulative(sequence_number)
        else:
            return self.resolve_single(sequence_number)


    def peek(self, sequence_number, multiple=False):
        """ Return the entries that :func:`resolve` would remove, without
            removing them.
        """

        with self._changed:
            if multiple:
                index = bisect.bisect_right(self._keys, sequence_number)
                return [self._entries[key] for key in self._keys[:index]]

            entry = self._entries.get(sequence_number)

        if entry is None:
            return []
        return [entry]


    def pending(self):
        """ Snapshot of the outstanding entries, in sequence order.
        """

        with self._changed:
            return [self._entries[key] for key in self._keys]


    def discard(self, sequence_numbers: Iterable[int]):
        """ Forget about the given entries without treating them as
            confirmed or rejected.
        """

        removed = list()
        for sequence_number in sequence_numbers:
            removed.extend(self.resolve_single(sequence_number))

        return removed


    def add_reject_listener(self, listener):
        """ *listener* is invoked with each :class:`PendingConfirm` the
            broker rejects, before the entry is removed.
        """

        self._reject_listeners.append(listener)


    def remove_reject_listener(self, listener):
        try:
            self._reject_listeners.remove(listener)
        except ValueError:
            pass


    def on_confirm(self, sequence_number, multiple=False):
        """ Transport entry point for a positive acknowledgment.
        """

        self._dispatcher.post(self.resolve, sequence_number, multiple)


    def on_reject(self, sequence_number, multiple=False):
        """ Transport entry point for a negative acknowledgment.
        """

        self._dispatcher.post(self._handle_reject, sequence_number, multiple)


    def _handle_reject(self, sequence_number, multiple):

        rejected = self.peek(sequence_number, multiple)

        for entry in rejected:
            logger.warning(
                "message nack'd by broker: seq={} multiple={} payload={!r}",
                entry.sequence_number, multiple, entry.payload,
            )

            for listener in list(self._reject_listeners):
                try:
                    listener(entry)
                except Exception:
                    logger.exception("reject listener failed for seq={}", entry.sequence_number)

        # Rejections and confirmations share the same cleanup.
        self.resolve(sequence_number, multiple)


    def await_drain(self, timeout=None):
        """ Block until no entries are outstanding. Returns True if that
            happened before *timeout* seconds elapsed, False otherwise. The
            outstanding entries are left untouched on a timeout.
        """

        with self._changed:
            return self._changed.wait_for(lambda: not self._keys, timeout)


    def flush(self, timeout=None):
        """ Block until every notification received so far has been applied.
        """

        return self._dispatcher.flush(timeout)


    def close(self):
        self._dispatcher.close()


    def _notify_if_empty(self):

        # Caller must hold self._changed.

        if not self._keys:
            self._changed.notify_all()


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
