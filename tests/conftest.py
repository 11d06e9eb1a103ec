import pytest

import courier
from courier.transport.memory import MemoryTransport


@pytest.fixture
def transport():

    transport = MemoryTransport()
    yield transport
    transport.close()


@pytest.fixture
def manual_transport():
    """ A transport that never confirms on its own; the test drives the
        broker's verdicts with confirm() and reject().
    """

    transport = MemoryTransport(auto_confirm=False)
    yield transport
    transport.close()


@pytest.fixture
def tracker():

    tracker = courier.ConfirmTracker()
    yield tracker
    tracker.close()


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
