""" Round trips between RpcClient and RpcServer over the in-memory
    transport.
"""

import concurrent.futures
import threading
import time

import pytest

import courier
from courier.rpc import ERROR_HEADER, ERROR_MARKER, fib, fibonacci


QUEUE = 'rpc_test'


@pytest.fixture
def server(transport):

    with courier.RpcServer(transport, queue=QUEUE) as server:
        yield server


@pytest.fixture
def client(transport):

    with courier.RpcClient(transport, queue=QUEUE, timeout=2) as client:
        yield client


def test_fib():

    assert [fib(n) for n in range(10)] == [0, 1, 1, 2, 3, 5, 8, 13, 21, 34]
    assert fibonacci('20') == '6765'

    with pytest.raises(courier.MalformedRequestError):
        fibonacci('abc')

    with pytest.raises(courier.MalformedRequestError):
        fibonacci('-3')


def test_call(server, client):

    assert client.call('5') == '5'
    assert client.call('0') == '0'
    assert client.call(10) == '55'


def test_malformed(server, client):
    """ A bad argument gets an error marker back, promptly, rather than
        leaving the client to time out.
    """

    begin = time.monotonic()
    assert client.call('abc', timeout=2) == ERROR_MARKER
    assert client.call('-1', timeout=2) == ERROR_MARKER
    assert time.monotonic() - begin < 2


def test_handler_failure(transport, client):

    def broken(argument):
        raise RuntimeError('handler is broken')

    with courier.RpcServer(transport, handler=broken, queue=QUEUE):
        assert client.call('1') == ERROR_MARKER

        # The server survives and keeps answering.
        assert client.call('2') == ERROR_MARKER


def test_timeout(transport):
    """ With nobody serving the queue the call times out, and the reply
        subscription and pending slot are released anyway.
    """

    transport.declare_queue(QUEUE)

    with courier.RpcClient(transport, queue=QUEUE) as client:
        with pytest.raises(courier.RpcTimeoutError):
            client.call('5', timeout=0.1)

        assert transport.subscriptions == 0
        assert len(client.correlator) == 0


def test_no_leaked_subscriptions(server, client, transport):

    for n in range(20):
        client.call(n)

    # Only the server's own subscription is left.
    assert transport.subscriptions == 1
    assert len(client.correlator) == 0

    reply_queues = [name for name in transport.queue_names() if name.startswith('amq.gen-')]
    assert reply_queues == []


def test_shared_reply(server, transport):

    with courier.RpcClient(transport, queue=QUEUE, timeout=2, shared_reply=True) as client:
        assert transport.subscriptions == 2

        workers = concurrent.futures.ThreadPoolExecutor(max_workers=4)
        answers = list(workers.map(client.call, range(15)))
        workers.shutdown()

        assert answers == [str(fib(n)) for n in range(15)]
        assert transport.subscriptions == 2

    assert transport.subscriptions == 1


def test_workers(transport, client):

    with courier.RpcServer(transport, queue=QUEUE, workers=2) as server:
        assert client.call('12') == '144'
        assert server.workers is not None

    assert server.workers is None


def test_error_header(server, transport):

    replies = list()
    reply_to = transport.declare_ephemeral_reply_destination()
    transport.subscribe(reply_to, replies.append)

    transport.send(QUEUE, None, b'\xff\xfe', correlation_id='undecodable', reply_to=reply_to)
    transport.send(QUEUE, None, b'seven', correlation_id='not-a-number', reply_to=reply_to)

    deadline = time.monotonic() + 2
    while len(replies) < 2 and time.monotonic() < deadline:
        transport.flush(1)

    by_id = dict((reply.correlation_id, reply) for reply in replies)

    assert by_id['undecodable'].body == b''
    assert 'undecodable' in by_id['undecodable'].headers[ERROR_HEADER]
    assert by_id['not-a-number'].headers[ERROR_HEADER].startswith('MalformedRequestError')


def test_request_without_reply_to(server, transport):
    """ A request nobody can answer is acknowledged and dropped; the server
        keeps running.
    """

    transport.send(QUEUE, None, b'5')
    transport.send(QUEUE, None, b'5', reply_to='nowhere')
    transport.flush(2)

    assert transport.unacked == 0


def test_serve_until_stopped(transport, client):

    server = courier.RpcServer(transport, queue=QUEUE, purge=True)
    thread = threading.Thread(target=server.serve)
    thread.start()

    deadline = time.monotonic() + 2
    while transport.subscriptions == 0 and time.monotonic() < deadline:
        time.sleep(0.01)

    assert client.call('7') == '13'
    assert transport.prefetch == 1

    server.stop()
    thread.join(2)

    assert thread.is_alive() == False
    assert transport.subscriptions == 0


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
