import pytest

import courier
from courier.transport import MemoryTransport, TransportError, TransportConnectionError


def test_backlog(transport):
    """ Messages sent before anyone subscribes wait in the queue.
    """

    transport.declare_queue('backlog')
    transport.send('backlog', None, b'one')
    transport.send('backlog', {'key': 'value'}, b'two')
    transport.flush(2)

    received = list()
    transport.subscribe('backlog', received.append)
    transport.flush(2)

    assert [delivery.body for delivery in received] == [b'one', b'two']
    assert received[1].headers == {'key': 'value'}


def test_round_robin(transport):

    transport.declare_queue('work')
    first = list()
    second = list()
    transport.subscribe('work', first.append)
    transport.subscribe('work', second.append)

    for number in range(10):
        transport.send('work', None, str(number).encode())

    transport.flush(2)

    assert len(first) == 5
    assert len(second) == 5


def test_sequence_numbers(transport):

    assert transport.next_sequence_number() == 1
    assert transport.send('anywhere', None, b'') == 1
    assert transport.send('anywhere', None, b'') == 2
    assert transport.next_sequence_number() == 3


def test_confirms():

    transport = MemoryTransport(reject_if=lambda body: body.startswith(b'bad'))
    acked = list()
    nacked = list()
    transport.add_confirm_listener(
        lambda sequence, multiple: acked.append(sequence),
        lambda sequence, multiple: nacked.append(sequence),
    )

    transport.send('q', None, b'good')
    transport.send('q', None, b'bad')
    transport.send('q', None, b'good')
    transport.flush(2)

    assert acked == [1, 3]
    assert nacked == [2]

    transport.close()


def test_ephemeral_queue(transport):

    name = transport.declare_ephemeral_reply_destination()
    tag = transport.subscribe(name, lambda delivery: None)
    assert name in transport.queue_names()

    transport.unsubscribe(tag)
    assert name not in transport.queue_names()

    # Redundant calls should be a no-op.
    transport.unsubscribe(tag)


def test_manual_ack(transport):

    transport.declare_queue('manual')
    received = list()
    transport.subscribe('manual', received.append, auto_ack=False)
    transport.send('manual', None, b'payload')
    transport.flush(2)

    assert transport.unacked == 1
    transport.ack(received[0].delivery_tag)
    assert transport.unacked == 0

    with pytest.raises(TransportError):
        transport.ack(received[0].delivery_tag)


def test_prefetch(transport):
    """ With a prefetch of one, a manual-ack consumer holds at most one
        delivery; each ack releases the next.
    """

    transport.declare_queue('limited')
    transport.set_prefetch(1)
    received = list()
    transport.subscribe('limited', received.append, auto_ack=False)

    for body in (b'one', b'two', b'three'):
        transport.send('limited', None, body)
    transport.flush(2)

    assert [delivery.body for delivery in received] == [b'one']
    assert transport.unacked == 1

    transport.ack(received[0].delivery_tag)
    transport.flush(2)
    assert [delivery.body for delivery in received] == [b'one', b'two']

    transport.ack(received[1].delivery_tag)
    transport.flush(2)
    assert [delivery.body for delivery in received] == [b'one', b'two', b'three']


def test_prefetch_spreads_load(transport):
    """ A consumer still holding its delivery is skipped in favor of one
        with room.
    """

    transport.declare_queue('shared')
    transport.set_prefetch(1)
    busy = list()
    idle = list()
    transport.subscribe('shared', busy.append, auto_ack=False)
    transport.subscribe('shared', idle.append, auto_ack=False)

    transport.send('shared', None, b'first')
    transport.send('shared', None, b'second')
    transport.flush(2)

    assert len(busy) == 1
    assert len(idle) == 1

    transport.ack(idle[0].delivery_tag)
    transport.send('shared', None, b'third')
    transport.flush(2)

    assert len(busy) == 1
    assert len(idle) == 2
    assert idle[1].body == b'third'


def test_before_send(transport):

    assigned = list()
    sequence_number = transport.send('anywhere', None, b'', before_send=assigned.append)
    assert assigned == [sequence_number] == [1]

    def refuse(sequence_number):
        raise RuntimeError('not this one')

    with pytest.raises(RuntimeError):
        transport.send('anywhere', None, b'', before_send=refuse)

    # A refused message does not use up its sequence number.
    assert transport.next_sequence_number() == 2


def test_remove_confirm_listener(transport):

    acked = list()
    on_confirm = lambda sequence, multiple: acked.append(sequence)
    on_reject = lambda sequence, multiple: None

    transport.add_confirm_listener(on_confirm, on_reject)
    transport.send('q', None, b'')
    transport.flush(2)

    transport.remove_confirm_listener(on_confirm, on_reject)
    transport.send('q', None, b'')
    transport.flush(2)

    assert acked == [1]

    # Redundant calls should be a no-op.
    transport.remove_confirm_listener(on_confirm, on_reject)


def test_unknown_queue(transport):

    with pytest.raises(TransportError):
        transport.subscribe('missing', print)


def test_closed():

    transport = courier.connect('memory')
    transport.close()

    assert transport.is_open == False
    with pytest.raises(TransportConnectionError):
        transport.send('q', None, b'')


def test_unknown_backend():

    with pytest.raises(ValueError):
        courier.connect('carrier-pigeon')


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
