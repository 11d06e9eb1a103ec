""" The RabbitMQ transport. The frame handling is checked without a broker;
    the round trips at the bottom only run when COURIER_AMQP_TEST is set
    and a broker is reachable with the COURIER_AMQP_* settings.
"""

import os
import queue
import threading
import types

import pika
import pika.frame
import pika.spec
import pytest

import courier
from courier.transport.rabbitmq import RabbitTransport


def bare_transport():
    """ A RabbitTransport that never connected, for exercising the I/O
        thread callbacks directly.
    """

    transport = RabbitTransport.__new__(RabbitTransport)
    transport._confirm_listeners = list()
    transport._reject_listeners = list()
    transport._outbox = queue.Queue()
    return transport


def test_confirmation_frames():

    transport = bare_transport()
    acked = list()
    nacked = list()
    transport.add_confirm_listener(
        lambda sequence, multiple: acked.append((sequence, multiple)),
        lambda sequence, multiple: nacked.append((sequence, multiple)),
    )

    ack = pika.frame.Method(1, pika.spec.Basic.Ack(delivery_tag=5, multiple=True))
    nack = pika.frame.Method(1, pika.spec.Basic.Nack(delivery_tag=6, multiple=False))

    transport._on_delivery_confirmation(ack)
    transport._on_delivery_confirmation(nack)

    assert acked == [(5, True)]
    assert nacked == [(6, False)]


class RecordingChannel:

    def __init__(self):
        self.published = list()

    def basic_publish(self, exchange, routing_key, body, properties=None):
        self.published.append((exchange, routing_key, body, properties))


def test_flush_outbox_in_order():

    transport = bare_transport()
    transport._channel = RecordingChannel()

    for number in range(3):
        properties = pika.BasicProperties(correlation_id=str(number))
        transport._outbox.put(('destination', str(number).encode(), properties))

    transport._flush_outbox()

    published = transport._channel.published
    assert [entry[2] for entry in published] == [b'0', b'1', b'2']
    assert [entry[3].correlation_id for entry in published] == ['0', '1', '2']
    assert transport._outbox.empty()


def test_remove_confirm_listener():

    transport = bare_transport()
    acked = list()
    on_confirm = lambda sequence, multiple: acked.append(sequence)
    on_reject = lambda sequence, multiple: None

    transport.add_confirm_listener(on_confirm, on_reject)
    transport.remove_confirm_listener(on_confirm, on_reject)
    transport.remove_confirm_listener(on_confirm, on_reject)

    ack = pika.frame.Method(1, pika.spec.Basic.Ack(delivery_tag=1, multiple=False))
    transport._on_delivery_confirmation(ack)

    assert acked == []
    assert transport._confirm_listeners == []
    assert transport._reject_listeners == []


class OpenChannel:

    is_open = True


class RecordingIOLoop:

    def __init__(self):
        self.callbacks = list()

    def add_callback_threadsafe(self, callback):
        self.callbacks.append(callback)


def test_send_before_send():
    """ The hook sees the sequence number before the message is queued for
        the I/O thread; if it raises, nothing is queued.
    """

    transport = bare_transport()
    transport._lock = threading.Lock()
    transport._sequence = 0
    transport._closing = False
    transport._channel = OpenChannel()
    transport._connection = types.SimpleNamespace(ioloop=RecordingIOLoop())

    queued = list()

    def before_send(sequence_number):
        queued.append((sequence_number, transport._outbox.qsize()))

    assert transport.send('q', None, b'one', before_send=before_send) == 1
    assert queued == [(1, 0)]
    assert transport._outbox.qsize() == 1

    def refuse(sequence_number):
        raise RuntimeError('not this one')

    with pytest.raises(RuntimeError):
        transport.send('q', None, b'two', before_send=refuse)

    assert transport._outbox.qsize() == 1
    assert transport.next_sequence_number() == 2


broker = pytest.mark.skipif(
    'COURIER_AMQP_TEST' not in os.environ,
    reason='set COURIER_AMQP_TEST to run against a live broker',
)


@broker
def test_publish_with_confirms():

    with RabbitTransport() as transport:
        destination = transport.declare_ephemeral_reply_destination()
        publisher = courier.ReliablePublisher(transport, destination, timeout=10)

        for strategy in courier.Strategy:
            result = publisher.publish(range(200), strategy)
            assert result.ok == True

        publisher.close()


@broker
def test_rpc_round_trip():

    with RabbitTransport(confirms=False) as server_transport, RabbitTransport(confirms=False) as client_transport:
        with courier.RpcServer(server_transport, queue='courier_test_rpc', purge=True):
            with courier.RpcClient(client_transport, queue='courier_test_rpc', timeout=10) as client:
                assert client.call('5') == '5'
                assert client.call('0') == '0'
                assert client.call('abc') == ''


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
