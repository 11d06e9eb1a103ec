""" Single-consumer notification channel. Transport callbacks arrive on
    whatever thread the client library happens to use; posting them here
    funnels every mutation of the owning component through one thread.
"""

import queue
import threading

from loguru import logger


_STOP = object()


class Dispatcher:
    """ Background thread invoking posted callables in FIFO order. A failing
        callable is logged and does not stop the thread.
    """

    def __init__(self, name='courier-dispatch'):

        self.name = name
        self.shutdown = False

        self._inbox = queue.Queue()
        self._idle = threading.Condition()
        self._backlog = 0

        self.thread = threading.Thread(target=self.run, name=name)
        self.thread.daemon = True
        self.thread.start()


    def post(self, method, *args):
        """ Arrange for *method* to be called with *args* on the dispatch
            thread. Returns False, and does nothing, if the dispatcher has
            been closed.
        """

        with self._idle:
            if self.shutdown == True:
                logger.debug("{} is closed, dropping {}", self.name, method)
                return False

            self._backlog += 1
            self._inbox.put((method, args))

        return True


    def flush(self, timeout=None):
        """ Block until everything posted so far has been invoked. Returns
            False if *timeout* expired first.
        """

        with self._idle:
            return self._idle.wait_for(lambda: self._backlog == 0, timeout)


    def run(self):

        while True:
            item = self._inbox.get()

            if item is _STOP:
                break

            method, args = item

            try:
                method(*args)
            except Exception:
                logger.exception("{} callback failed", self.name)
            finally:
                with self._idle:
                    self._backlog -= 1
                    if self._backlog == 0:
                        self._idle.notify_all()


    def close(self, timeout=None):

        # Nothing can be posted behind the stop marker.

        with self._idle:
            if self.shutdown == True:
                return
            self.shutdown = True
            self._inbox.put(_STOP)

        if threading.current_thread() is not self.thread:
            self.thread.join(timeout)


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
