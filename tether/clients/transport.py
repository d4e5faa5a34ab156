"""
KernelTransport owns the websocket to one kernel's channels endpoint.

 - .connect() starts a poll task that opens the websocket and pushes every received frame to the
   .message_received signal, synchronously and in wire order
 - .send() is not async, frames are appended to an outbound queue and an outbound worker writes
   them once a socket is open. A frame that fails to go out because the socket closed underneath
   it stays at the head of the queue and is written to the next socket
 - When the socket closes unexpectedly the transport reconnects with capped exponential backoff.
   Each attempt opens a brand new socket object, nothing is reused from the old one
 - Once the BackoffPolicy runs out of attempts the transport is dead for good: .state_changed
   reports DEAD, queued frames are dropped, and .send() raises TransportDeadError

State machine:

    DISCONNECTED -> CONNECTED -> RECONNECTING(attempt) -> CONNECTED
                                       |
                                       +-> DEAD
    any -> CLOSED on .close() / .dispose()
"""
import asyncio
import collections
import enum
import logging
from typing import Any, Awaitable, Callable, Deque, Iterator, List, Optional, Union

import backoff
import websockets
from pydantic import BaseModel
from websockets.exceptions import ConnectionClosed, WebSocketException

from tether.signals import Signal

logger = logging.getLogger(__name__)

Frame = Union[str, bytes]


class TransportDeadError(ConnectionError):
    pass


class ConnectionState(str, enum.Enum):
    disconnected = "disconnected"
    connected = "connected"
    reconnecting = "reconnecting"
    dead = "dead"
    closed = "closed"


class BackoffPolicy(BaseModel):
    """
    How long to wait between reconnection attempts, and how many attempts to make before giving
    up. Delays are factor * base ** n capped at max_delay, so the defaults wait 1, 2, 4, ... 30
    seconds. Tests use factor=0 to reconnect immediately.
    """

    max_attempts: int = 7
    factor: float = 1.0
    base: float = 2
    max_delay: float = 30.0
    jitter: bool = False

    def delays(self) -> Iterator[float]:
        gen = backoff.expo(base=self.base, factor=self.factor, max_value=self.max_delay)
        next(gen)  # backoff generators need to be primed before they yield values
        for _ in range(self.max_attempts):
            delay = next(gen)
            if self.jitter:
                delay = backoff.full_jitter(delay)
            yield delay


class KernelTransport:
    def __init__(
        self,
        ws_url: str,
        backoff_policy: Optional[BackoffPolicy] = None,
        connect: Optional[Callable[..., Awaitable[Any]]] = None,
    ):
        self.ws_url = ws_url
        self.backoff_policy = backoff_policy or BackoffPolicy()
        # Injectable for tests, must return something with async .send / .recv / .close
        self._connect = connect or websockets.connect

        self.state = ConnectionState.disconnected
        self.attempt = 0  # reconnection attempt number while RECONNECTING, 0 otherwise

        self.message_received = Signal("message_received")  # emits raw frame (str | bytes)
        self.state_changed = Signal("state_changed")  # emits ConnectionState

        self._ws = None
        self._connected = asyncio.Event()
        self._outbox: Deque[Frame] = collections.deque()
        self._outbox_event = asyncio.Event()
        self._opened: Optional[asyncio.Future] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._outbound_task: Optional[asyncio.Task] = None
        self._reconnect_now = False  # set by .reconnect(), skips the backoff delay once
        # .reconnect() callers waiting for the next socket
        self._socket_waiters: List[asyncio.Future] = []

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.connected

    def _set_state(self, state: ConnectionState, attempt: int = 0):
        self.attempt = attempt
        if state == self.state and state != ConnectionState.reconnecting:
            return
        logger.info(
            f"Transport state {self.state.value} -> {state.value}",
            extra={"ws_url": self.ws_url, "attempt": attempt},
        )
        self.state = state
        self.state_changed.emit(state)

    async def connect(self) -> None:
        """
        Start the poll and outbound workers and wait for the first socket to open. Raises
        TransportDeadError if every attempt allowed by the BackoffPolicy fails.
        """
        if self.state in (ConnectionState.dead, ConnectionState.closed):
            raise TransportDeadError(f"Transport is {self.state.value}")
        if self._poll_task is None:
            self._opened = asyncio.get_running_loop().create_future()
            self._poll_task = asyncio.create_task(self._poll_loop())
            self._outbound_task = asyncio.create_task(self._outbound_worker())
        await asyncio.shield(self._opened)

    def send(self, frame: Frame) -> None:
        if self.state in (ConnectionState.dead, ConnectionState.closed):
            raise TransportDeadError(f"Cannot send, transport is {self.state.value}")
        self._outbox.append(frame)
        self._outbox_event.set()

    async def reconnect(self) -> None:
        """Drop the current socket (if any) and wait for the poll loop to open a new one."""
        if self.state in (ConnectionState.dead, ConnectionState.closed):
            raise TransportDeadError(f"Transport is {self.state.value}")
        waiter = asyncio.get_running_loop().create_future()
        self._socket_waiters.append(waiter)
        ws = self._ws
        if ws is not None:
            self._reconnect_now = True
            await ws.close()
        try:
            await waiter
        finally:
            if waiter in self._socket_waiters:
                self._socket_waiters.remove(waiter)

    def _resolve_socket_waiters(self, exc: Optional[Exception] = None) -> None:
        waiters, self._socket_waiters = self._socket_waiters, []
        for waiter in waiters:
            if waiter.done():
                continue
            if exc is None:
                waiter.set_result(None)
            else:
                waiter.set_exception(exc)

    def dispose(self) -> None:
        """Stop all work. Cancelling the poll task closes the socket on its way out."""
        if self.state == ConnectionState.closed:
            return
        for task in (self._poll_task, self._outbound_task):
            if task is not None and not task.done():
                task.cancel()
        self._outbox.clear()
        self._connected.clear()
        if self._opened is not None and not self._opened.done():
            self._opened.set_exception(TransportDeadError("Transport closed before connecting"))
            self._opened.exception()  # mark retrieved, nobody may be waiting on it
        self._resolve_socket_waiters(TransportDeadError("Transport closed"))
        self._set_state(ConnectionState.closed)

    async def close(self) -> None:
        tasks = [t for t in (self._poll_task, self._outbound_task) if t is not None]
        self.dispose()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _poll_loop(self):
        delays: Optional[Iterator[float]] = None
        attempt = 0
        while True:
            ws = None
            try:
                ws = await self._connect(self.ws_url, max_size=None)
            except (OSError, WebSocketException, asyncio.TimeoutError) as e:
                logger.warning(
                    f"Failed to open websocket: {e!r}",
                    extra={"ws_url": self.ws_url, "attempt": attempt},
                )

            if ws is not None:
                delays, attempt = None, 0
                self._ws = ws
                self._connected.set()
                self._set_state(ConnectionState.connected)
                self._resolve_socket_waiters()
                if not self._opened.done():
                    self._opened.set_result(None)
                try:
                    await self._read(ws)
                finally:
                    self._connected.clear()
                    self._ws = None
                    await ws.close()
                logger.info("Websocket disconnected", extra={"ws_url": self.ws_url})

            if self._reconnect_now:
                self._reconnect_now = False
                attempt += 1
                self._set_state(ConnectionState.reconnecting, attempt=attempt)
                continue

            if delays is None:
                delays = self.backoff_policy.delays()
            delay = next(delays, None)
            if delay is None:
                self._die()
                return
            attempt += 1
            self._set_state(ConnectionState.reconnecting, attempt=attempt)
            await asyncio.sleep(delay)

    async def _read(self, ws):
        while True:
            try:
                frame = await ws.recv()
            except (ConnectionClosed, OSError) as e:
                logger.debug(
                    f"Websocket closed while reading: {e!r}", extra={"ws_url": self.ws_url}
                )
                return
            self.message_received.emit(frame)

    def _die(self):
        logger.error(
            "Giving up on websocket after exhausting reconnection attempts",
            extra={"ws_url": self.ws_url, "max_attempts": self.backoff_policy.max_attempts},
        )
        self._outbox.clear()
        if self._outbound_task is not None:
            self._outbound_task.cancel()
        self._set_state(ConnectionState.dead)
        self._resolve_socket_waiters(TransportDeadError("Could not reconnect to kernel websocket"))
        if not self._opened.done():
            self._opened.set_exception(TransportDeadError("Could not connect to kernel websocket"))

    async def _outbound_worker(self):
        while True:
            await self._connected.wait()
            if not self._outbox:
                self._outbox_event.clear()
                await self._outbox_event.wait()
                continue
            ws = self._ws
            if ws is None:
                continue
            frame = self._outbox[0]
            try:
                await ws.send(frame)
            except ConnectionClosed:
                # The poll loop sees the same closure and reconnects, the frame stays queued
                if self._ws is ws:
                    self._connected.clear()
                continue
            self._outbox.popleft()
