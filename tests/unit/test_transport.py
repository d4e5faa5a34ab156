import asyncio

import pytest

from tether.clients.transport import (
    BackoffPolicy,
    ConnectionState,
    KernelTransport,
    TransportDeadError,
)

WS_URL = "ws://jupyter.test/api/kernels/abc/channels"


@pytest.fixture
async def make_transport(kernel_tester, fast_backoff):
    created = []

    def make(backoff_policy: BackoffPolicy = fast_backoff) -> KernelTransport:
        transport = KernelTransport(WS_URL, backoff_policy, connect=kernel_tester.connect)
        created.append(transport)
        return transport

    yield make

    for transport in created:
        await transport.close()


def record_states(transport: KernelTransport) -> list:
    states = []
    transport.state_changed.connect(states.append)
    return states


def test_backoff_delays():
    policy = BackoffPolicy(max_attempts=7, factor=1, base=2, max_delay=30)

    assert list(policy.delays()) == [1, 2, 4, 8, 16, 30, 30]


def test_backoff_jitter_stays_under_cap():
    policy = BackoffPolicy(max_attempts=5, factor=1, max_delay=4, jitter=True)

    delays = list(policy.delays())

    assert len(delays) == 5
    assert all(0 <= delay <= 4 for delay in delays)


async def test_connect(make_transport, kernel_tester):
    transport = make_transport()
    states = record_states(transport)

    await transport.connect()

    assert transport.is_connected
    assert states == [ConnectionState.connected]
    url, kwargs = kernel_tester.connect_calls[0]
    assert url == WS_URL
    # kernels can send large outputs, the websocket frame size is not capped
    assert kwargs == {"max_size": None}


async def test_frames_delivered_in_order(make_transport, kernel_tester, eventually):
    transport = make_transport()
    received = []
    transport.message_received.connect(received.append)
    await transport.connect()

    for i in range(5):
        kernel_tester.send_raw(f"frame-{i}")

    await eventually(lambda: len(received) == 5)
    assert received == [f"frame-{i}" for i in range(5)]


async def test_send_before_connect_is_queued(make_transport, kernel_tester, eventually):
    transport = make_transport()
    transport.send("first")
    transport.send(b"second")

    await transport.connect()

    await eventually(lambda: len(kernel_tester.frames) == 2)
    assert kernel_tester.frames == ["first", b"second"]


async def test_reconnects_after_drop(make_transport, kernel_tester, eventually):
    transport = make_transport()
    states = record_states(transport)
    await transport.connect()

    kernel_tester.drop()

    await eventually(lambda: len(states) == 3)
    assert states == [
        ConnectionState.connected,
        ConnectionState.reconnecting,
        ConnectionState.connected,
    ]
    # every attempt gets a brand new socket
    assert len(kernel_tester.sockets) == 2
    assert kernel_tester.sockets[0] is not kernel_tester.sockets[1]


async def test_dead_after_max_attempts(make_transport, kernel_tester, eventually):
    transport = make_transport()
    states = record_states(transport)
    await transport.connect()

    kernel_tester.refuse = True
    kernel_tester.drop()

    await eventually(lambda: transport.state == ConnectionState.dead)
    assert states == [
        ConnectionState.connected,
        ConnectionState.reconnecting,
        ConnectionState.reconnecting,
        ConnectionState.reconnecting,
        ConnectionState.dead,
    ]
    with pytest.raises(TransportDeadError):
        transport.send("too late")


async def test_connect_fails_when_never_reachable(make_transport, kernel_tester):
    transport = make_transport()
    kernel_tester.refuse = True

    with pytest.raises(TransportDeadError):
        await transport.connect()

    assert transport.state == ConnectionState.dead
    # the first attempt plus one per backoff delay
    assert len(kernel_tester.connect_calls) == 4


async def test_queued_sends_flushed_after_reconnect(make_transport, kernel_tester, eventually):
    transport = make_transport(BackoffPolicy(factor=0.05, max_delay=0.05, max_attempts=10))
    await transport.connect()

    kernel_tester.refuse = True
    kernel_tester.drop()
    await eventually(lambda: transport.state == ConnectionState.reconnecting)
    transport.send("queued-1")
    transport.send("queued-2")
    kernel_tester.refuse = False

    await eventually(lambda: len(kernel_tester.frames) == 2)
    assert transport.is_connected
    assert kernel_tester.frames == ["queued-1", "queued-2"]


async def test_explicit_reconnect(make_transport, kernel_tester):
    transport = make_transport(BackoffPolicy(factor=10, max_attempts=2))
    states = record_states(transport)
    await transport.connect()

    # no backoff delay for a reconnect that was asked for
    await transport.reconnect()

    assert transport.is_connected
    assert len(kernel_tester.sockets) == 2
    assert states == [
        ConnectionState.connected,
        ConnectionState.reconnecting,
        ConnectionState.connected,
    ]


async def test_reconnect_fails_when_unreachable(make_transport, kernel_tester):
    transport = make_transport()
    await transport.connect()
    kernel_tester.refuse = True

    with pytest.raises(TransportDeadError):
        await transport.reconnect()

    assert transport.state == ConnectionState.dead
    assert transport._socket_waiters == []
    with pytest.raises(TransportDeadError):
        await transport.reconnect()


async def test_dispose_during_reconnect(make_transport, kernel_tester, eventually):
    transport = make_transport(BackoffPolicy(factor=10, max_attempts=2))
    await transport.connect()
    kernel_tester.refuse = True

    task = asyncio.create_task(transport.reconnect())
    await eventually(lambda: len(kernel_tester.connect_calls) == 2)
    assert not task.done()
    transport.dispose()

    with pytest.raises(TransportDeadError):
        await task


async def test_dispose(make_transport, kernel_tester, eventually):
    transport = make_transport()
    await transport.connect()

    transport.dispose()

    assert transport.state == ConnectionState.closed
    with pytest.raises(TransportDeadError):
        transport.send("nope")
    with pytest.raises(TransportDeadError):
        await transport.connect()
    await eventually(lambda: kernel_tester.ws.closed)
