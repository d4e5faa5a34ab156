"""
KernelConnection is a client for one running kernel.

 - Owns a KernelTransport (websocket to the kernel channels endpoint) and a CommRegistry
 - Every outgoing request that expects anything back gets a KernelFuture, registered by msg_id
   before the request is written to the wire
 - Every inbound frame is decoded, emitted on .any_message right away, then queued for handling
   behind earlier messages with the same parent msg_id. Messages for different parents are
   handled concurrently, messages for one parent are handled strictly in wire order
 - iopub status messages drive .status, comm messages are dispatched to the CommRegistry

Use case:

kernel = KernelConnection(model, api_client)
await kernel.start()
future = kernel.request_execute({"code": "print('hello')"})
future.on_iopub = lambda msg: print(msg)
await future.done
"""
import asyncio
import enum
import functools
import logging
import uuid
from typing import Any, Callable, Dict, List, Literal, NamedTuple, Optional, Union

from pydantic import BaseModel

from tether import codec
from tether.clients.api import APIClient, ResponseError
from tether.clients.comm import Comm, CommRegistry, CommTargetHandler
from tether.clients.future import (
    KernelFuture,
    MessageHook,
    MessageHooks,
    content_field,
    execution_state,
)
from tether.clients.transport import (
    BackoffPolicy,
    ConnectionState,
    KernelTransport,
    TransportDeadError,
)
from tether.models.api.kernels import KernelModel, KernelSpecModel
from tether.models.messages.base import BaseMessage, RawMessage
from tether.models.messages.channels.shell import ExecuteRequestContent
from tether.signals import Signal

logger = logging.getLogger(__name__)


class KernelIsDeadError(RuntimeError):
    pass


class KernelIsDisposedError(RuntimeError):
    pass


class RequestCancelledError(RuntimeError):
    """The request's future was cleared (kernel restart, dispose) before its reply arrived."""


class KernelStatus(str, enum.Enum):
    unknown = "unknown"
    starting = "starting"
    idle = "idle"
    busy = "busy"
    restarting = "restarting"
    reconnecting = "reconnecting"
    connected = "connected"
    dead = "dead"


# Statuses reported by the kernel itself, connection statuses revert to the last one of these
EXECUTION_STATUSES = (KernelStatus.starting, KernelStatus.idle, KernelStatus.busy)

DISPLAY_MSG_TYPES = ("display_data", "update_display_data", "execute_result")
COMM_MSG_TYPES = ("comm_open", "comm_msg", "comm_close")


class AnyMessageArgs(NamedTuple):
    msg: BaseMessage
    direction: Literal["send", "recv"]


Content = Union[BaseModel, Dict[str, Any], None]


class KernelConnection:
    def __init__(
        self,
        model: KernelModel,
        api_client: APIClient,
        username: str = "",
        client_id: Optional[str] = None,
        handle_comms: bool = True,
        backoff_policy: Optional[BackoffPolicy] = None,
        connect: Optional[Callable] = None,
    ):
        self.model = model
        self.api_client = api_client
        self.username = username
        # Stamped as header.session on everything we send, used to pick out replies to us
        self.client_id = client_id or uuid.uuid4().hex
        self.handle_comms = handle_comms
        self.backoff_policy = backoff_policy
        self.connect = connect

        self.status = KernelStatus.unknown
        self.info: Optional[BaseModel] = None
        self.is_disposed = False

        self.status_changed = Signal("status_changed")  # emits KernelStatus
        self.iopub_message = Signal("iopub_message")  # emits BaseMessage
        self.unhandled_message = Signal("unhandled_message")  # emits BaseMessage
        self.any_message = Signal("any_message")  # emits AnyMessageArgs
        self.disposed = Signal("disposed")  # emits KernelConnection
        self.terminated = Signal("terminated")  # emits KernelConnection

        self.comms = CommRegistry(self)
        self._futures: Dict[str, KernelFuture] = {}
        self._message_hooks: Dict[str, MessageHooks] = {}
        self._reply_waiters: Dict[str, asyncio.Future] = {}
        # Last task in the handling chain for each parent msg_id
        self._chains: Dict[str, asyncio.Task] = {}
        self._display_id_to_parent_ids: Dict[str, List[str]] = {}
        self._msg_id_to_display_ids: Dict[str, List[str]] = {}
        self._execution_status = KernelStatus.unknown
        self._ready: Optional[asyncio.Future] = None
        self._info_task: Optional[asyncio.Task] = None

        self.transport = KernelTransport(
            api_client.kernel_ws_url(model.id, self.client_id),
            backoff_policy=backoff_policy,
            connect=connect,
        )
        self.transport.message_received.connect(self._on_frame)
        self.transport.state_changed.connect(self._on_transport_state)

    def __repr__(self):
        return f"<KernelConnection id={self.id!r} name={self.name!r} status={self.status.value}>"

    @property
    def id(self) -> str:
        return self.model.id

    @property
    def name(self) -> str:
        return self.model.name

    @property
    def ready(self) -> asyncio.Future:
        """Resolves once the kernel_info_reply for the current connection has been received."""
        if self._ready is None:
            self._ready = asyncio.get_running_loop().create_future()
        return self._ready

    @property
    def is_ready(self) -> bool:
        return self._ready is not None and self._ready.done() and not self._ready.exception()

    def _extra(self, **kwargs) -> dict:
        return {"kernel_id": self.id, "client_id": self.client_id, **kwargs}

    # Lifecycle
    async def start(self) -> None:
        """Open the websocket and wait until the kernel has answered a kernel_info_request."""
        self._check_alive()
        ready = self.ready
        try:
            await self.transport.connect()
        except TransportDeadError as e:
            raise KernelIsDeadError(f"Could not connect to kernel {self.id}") from e
        await ready

    async def reconnect(self) -> None:
        self._check_alive()
        await self.transport.reconnect()

    async def interrupt(self) -> None:
        self._check_alive()
        await self.api_client.interrupt_kernel(self.id)

    async def restart(self) -> None:
        """
        Restart through the REST API, then reconnect in case the kernel's ports changed. Futures
        and comms from before the restart are cleared, .ready is re-armed for the new kernel.
        """
        self._check_alive()
        self._clear_state()
        self._update_status(KernelStatus.restarting)
        if self._ready is not None and self._ready.done():
            self._ready = None
        ready = self.ready
        await self.api_client.restart_kernel(self.id)
        await self.reconnect()
        await ready

    async def shutdown(self) -> None:
        """Shut the kernel down on the server. A kernel that is already gone is not an error."""
        if self.is_disposed:
            return
        if self.status == KernelStatus.dead:
            self.dispose()
            return
        try:
            await self.api_client.shutdown_kernel(self.id)
        except ResponseError as e:
            if e.response.status_code != 404:
                raise
            logger.info("Kernel was already shut down", extra=self._extra())
        self._clear_state()
        self.terminated.emit(self)
        self.dispose()

    def dispose(self) -> None:
        if self.is_disposed:
            return
        self.is_disposed = True
        logger.debug("Disposing kernel connection", extra=self._extra())
        self._clear_state()
        self.comms.dispose()
        if self._info_task is not None:
            self._info_task.cancel()
        self.transport.dispose()
        self._fail_ready(KernelIsDisposedError(f"Kernel connection {self.id} was disposed"))
        self.disposed.emit(self)
        for signal in (
            self.status_changed,
            self.iopub_message,
            self.unhandled_message,
            self.any_message,
            self.disposed,
            self.terminated,
        ):
            signal.disconnect_all()

    def _check_alive(self):
        if self.is_disposed:
            raise KernelIsDisposedError(f"Kernel connection {self.id} is disposed")
        if self.status == KernelStatus.dead:
            raise KernelIsDeadError(f"Kernel {self.id} is dead")

    def _fail_ready(self, exc: Exception):
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(exc)
            self._ready.exception()  # nobody has to be awaiting .ready

    def _clear_state(self):
        """Drop futures, hooks, comms, display ids, and any queued message handling."""
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        for task in self._chains.values():
            if task is not current:
                task.cancel()
        self._chains.clear()
        for future in list(self._futures.values()):
            future.dispose()
        self._futures.clear()
        self._message_hooks.clear()
        self._display_id_to_parent_ids.clear()
        self._msg_id_to_display_ids.clear()
        self.comms.clear()

    # Status
    def _update_status(self, status: Union[str, KernelStatus, None]) -> None:
        try:
            status = KernelStatus(status)
        except ValueError:
            logger.warning(f"Ignoring invalid kernel status {status!r}", extra=self._extra())
            return
        if self.status == KernelStatus.dead or status == self.status:
            return
        if status in EXECUTION_STATUSES:
            self._execution_status = status
        if status == KernelStatus.restarting:
            self._clear_state()

        logger.info(f"Kernel status {self.status.value} -> {status.value}", extra=self._extra())
        self.status = status
        self.status_changed.emit(status)

        if status == KernelStatus.dead:
            self._clear_state()
            if self._info_task is not None:
                self._info_task.cancel()
            self.transport.dispose()
            self._fail_ready(KernelIsDeadError(f"Kernel {self.id} is dead"))

    def _on_transport_state(self, state: ConnectionState) -> None:
        if self.is_disposed:
            return
        if state == ConnectionState.connected:
            self._update_status(KernelStatus.connected)
            self._info_task = asyncio.create_task(self._fetch_info())
        elif state == ConnectionState.reconnecting:
            self._update_status(KernelStatus.reconnecting)
        elif state == ConnectionState.dead:
            logger.error("Lost connection to kernel for good", extra=self._extra())
            self._update_status(KernelStatus.dead)

    async def _fetch_info(self):
        try:
            self.info = await self.request_kernel_info()
        except (KernelIsDeadError, KernelIsDisposedError, RequestCancelledError) as e:
            logger.debug(f"kernel_info_request abandoned: {e!r}", extra=self._extra())
            return
        if self.status == KernelStatus.connected and self._execution_status in EXECUTION_STATUSES:
            self._update_status(self._execution_status)
        ready = self.ready
        if not ready.done():
            ready.set_result(None)

    # Inbound
    def _on_frame(self, frame: Union[str, bytes]) -> None:
        if self.is_disposed:
            return
        try:
            msg = codec.parse_frame(frame)
        except codec.MalformedMessageError as e:
            logger.error(f"Dropping malformed message: {e}", extra=self._extra())
            return
        extra = self._extra(msg_id=msg.msg_id, msg_type=msg.msg_type, channel=msg.channel)
        if isinstance(msg, RawMessage):
            logger.warning("Received message with an invalid envelope", extra=extra)
        elif type(msg) is BaseMessage:
            logger.warning("Received unmodeled message", extra=extra)
        else:
            logger.debug("Received message", extra=extra)
        self.any_message.emit(AnyMessageArgs(msg, "recv"))
        self._enqueue(msg)

    def _enqueue(self, msg: BaseMessage) -> None:
        key = msg.parent_msg_id or ""
        previous = self._chains.get(key)
        task = asyncio.create_task(self._handle_in_turn(previous, msg))
        self._chains[key] = task
        task.add_done_callback(functools.partial(self._chain_done, key))

    def _chain_done(self, key: str, task: asyncio.Task) -> None:
        if self._chains.get(key) is task:
            del self._chains[key]

    async def _handle_in_turn(self, previous: Optional[asyncio.Task], msg: BaseMessage):
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        if self.is_disposed:
            return
        try:
            await self._handle_message(msg)
        except Exception:
            logger.exception(
                "Error handling message",
                extra=self._extra(msg_id=msg.msg_id, msg_type=msg.msg_type, channel=msg.channel),
            )

    def _is_foreign(self, msg: BaseMessage) -> bool:
        """Parentless iopub messages are kernel broadcasts, anything else needs our session."""
        parent = msg.parent_header
        if parent is None:
            return msg.channel != "iopub"
        return parent.session != self.client_id

    async def _handle_message(self, msg: BaseMessage) -> None:
        if isinstance(msg, RawMessage):
            self.unhandled_message.emit(msg)
            return

        handled = False

        if msg.channel == "iopub" and msg.msg_type in DISPLAY_MSG_TYPES:
            display_id = (content_field(msg, "transient") or {}).get("display_id")
            if display_id:
                handled = await self._handle_display_id(display_id, msg)

        parent = msg.parent_header
        if not handled and parent is not None and parent.session == self.client_id:
            future = self._futures.get(parent.msg_id)
            if future is not None:
                await future.handle_msg(msg, self._kernel_hooks(parent.msg_id))
                handled = True

        if self.is_disposed:
            return

        if msg.channel == "iopub":
            if msg.msg_type == "status":
                self._update_status(execution_state(msg))
            elif msg.msg_type in COMM_MSG_TYPES and self.handle_comms:
                await self._handle_comm_msg(msg)
            self.iopub_message.emit(msg)

        if type(msg) is BaseMessage or self._is_foreign(msg):
            self.unhandled_message.emit(msg)

    async def _handle_comm_msg(self, msg: BaseMessage):
        if msg.msg_type == "comm_open":
            await self.comms.handle_open(msg)
        elif msg.msg_type == "comm_msg":
            await self.comms.handle_msg(msg)
        elif msg.msg_type == "comm_close":
            await self.comms.handle_close(msg)

    async def _handle_display_id(self, display_id: str, msg: BaseMessage) -> bool:
        """
        Outputs that share a display_id are updated together. If we've seen this display_id
        before, re-deliver the message as update_display_data to every request that showed it.
        Returns True when the message needs no further routing (it was an update).
        """
        parent_ids = self._display_id_to_parent_ids.get(display_id)
        if parent_ids:
            data = msg.model_dump(exclude={"buffers", "msg_type"})
            data["header"]["msg_type"] = "update_display_data"
            data["buffers"] = list(msg.buffers)
            update_msg = codec.validate(data)
            for parent_id in list(parent_ids):
                future = self._futures.get(parent_id)
                if future is not None:
                    await future.handle_msg(update_msg, self._kernel_hooks(parent_id))

        if msg.msg_type == "update_display_data":
            return True

        msg_id = msg.parent_msg_id
        if msg_id is None:
            return False
        parent_ids = self._display_id_to_parent_ids.setdefault(display_id, [])
        if msg_id not in parent_ids:
            parent_ids.append(msg_id)
        display_ids = self._msg_id_to_display_ids.setdefault(msg_id, [])
        if display_id not in display_ids:
            display_ids.append(display_id)
        return False

    # Outbound
    def create_message(
        self,
        msg_type: str,
        channel: str = "shell",
        content: Content = None,
        metadata: Optional[dict] = None,
        buffers: Optional[List[bytes]] = None,
    ) -> BaseMessage:
        return codec.create_message(
            msg_type,
            channel,
            content=content,
            metadata=metadata,
            buffers=buffers,
            session=self.client_id,
            username=self.username,
        )

    def _send(self, msg: BaseMessage) -> None:
        self._check_alive()
        self.any_message.emit(AnyMessageArgs(msg, "send"))
        logger.debug(
            "Sending message",
            extra=self._extra(msg_id=msg.msg_id, msg_type=msg.msg_type, channel=msg.channel),
        )
        try:
            self.transport.send(codec.serialize(msg))
        except TransportDeadError as e:
            raise KernelIsDeadError(f"Kernel {self.id} is dead") from e

    def _send_request(
        self, msg: BaseMessage, expect_reply: bool, dispose_on_done: bool
    ) -> KernelFuture:
        self._check_alive()
        future = KernelFuture(
            msg,
            expect_reply=expect_reply,
            dispose_on_done=dispose_on_done,
            on_dispose=self._on_future_disposed,
        )
        self._futures[msg.msg_id] = future
        try:
            self._send(msg)
        except Exception:
            future.dispose()
            raise
        return future

    def _on_future_disposed(self, future: KernelFuture) -> None:
        msg_id = future.msg_id
        if self._futures.get(msg_id) is future:
            del self._futures[msg_id]
        self._message_hooks.pop(msg_id, None)
        for display_id in self._msg_id_to_display_ids.pop(msg_id, []):
            parent_ids = self._display_id_to_parent_ids.get(display_id, [])
            if msg_id in parent_ids:
                parent_ids.remove(msg_id)
            if not parent_ids:
                self._display_id_to_parent_ids.pop(display_id, None)
        waiter = self._reply_waiters.pop(msg_id, None)
        if waiter is not None and not waiter.done():
            if self.status == KernelStatus.dead:
                waiter.set_exception(KernelIsDeadError(f"Kernel {self.id} is dead"))
            else:
                waiter.set_exception(RequestCancelledError(f"Request {msg_id} was cancelled"))

    def send_shell_message(
        self, msg: BaseMessage, expect_reply: bool = False, dispose_on_done: bool = True
    ) -> KernelFuture:
        return self._send_request(msg, expect_reply, dispose_on_done)

    def send_control_message(
        self, msg: BaseMessage, expect_reply: bool = False, dispose_on_done: bool = True
    ) -> KernelFuture:
        return self._send_request(msg, expect_reply, dispose_on_done)

    def send_input_reply(self, content: Content) -> None:
        """Answer an input_request. There is no reply, so no future is registered."""
        msg = self.create_message("input_reply", "stdin", content=content)
        self._send(msg)

    def request_execute(
        self,
        content: Union[ExecuteRequestContent, Dict[str, Any]],
        dispose_on_done: bool = True,
        metadata: Optional[dict] = None,
    ) -> KernelFuture:
        if isinstance(content, dict):
            content = ExecuteRequestContent(**content)
        msg = self.create_message("execute_request", "shell", content=content, metadata=metadata)
        return self.send_shell_message(msg, expect_reply=True, dispose_on_done=dispose_on_done)

    async def _request(self, msg_type: str, content: Content = None, channel: str = "shell"):
        """Send a request and return the content of its reply, without waiting for idle."""
        msg = self.create_message(msg_type, channel, content=content)
        waiter = asyncio.get_running_loop().create_future()

        def on_reply(reply: BaseMessage):
            if not waiter.done():
                waiter.set_result(reply)

        self._reply_waiters[msg.msg_id] = waiter
        try:
            future = self._send_request(msg, expect_reply=True, dispose_on_done=True)
        except Exception:
            self._reply_waiters.pop(msg.msg_id, None)
            raise
        future.on_reply = on_reply
        try:
            reply = await waiter
        finally:
            self._reply_waiters.pop(msg.msg_id, None)
        return reply.content

    async def request_kernel_info(self):
        return await self._request("kernel_info_request")

    async def request_complete(self, content: Content):
        return await self._request("complete_request", content)

    async def request_inspect(self, content: Content):
        return await self._request("inspect_request", content)

    async def request_is_complete(self, content: Content):
        return await self._request("is_complete_request", content)

    async def request_history(self, content: Content):
        return await self._request("history_request", content)

    async def request_comm_info(self, content: Content = None):
        return await self._request("comm_info_request", content)

    async def is_complete(self, code: str, timeout: float = 0.25) -> bool:
        """
        Should this code be submitted? Kernels that are slow to answer or can't answer are
        assumed to say yes, a dead kernel can't run anything so that's a no.
        """
        try:
            content = await asyncio.wait_for(
                self.request_is_complete({"code": code}), timeout=timeout
            )
        except KernelIsDeadError:
            return False
        except asyncio.TimeoutError:
            logger.debug("is_complete_request timed out", extra=self._extra())
            return True
        except Exception:
            logger.exception("is_complete_request failed", extra=self._extra())
            return True
        if isinstance(content, dict):
            status = content.get("status")
        else:
            status = getattr(content, "status", None)
        return status != "incomplete"

    async def get_spec(self) -> KernelSpecModel:
        specs = await self.api_client.get_kernel_specs()
        return specs.kernelspecs[self.name]

    # Comms
    def register_comm_target(self, target_name: str, handler: CommTargetHandler) -> Callable:
        return self.comms.register_target(target_name, handler)

    def remove_comm_target(self, target_name: str, handler: Optional[CommTargetHandler] = None):
        self.comms.remove_target(target_name, handler)

    def create_comm(self, target_name: str, comm_id: Optional[str] = None) -> Comm:
        self._check_alive()
        if not self.handle_comms:
            raise RuntimeError("Comms are disabled on this kernel connection")
        return self.comms.create_comm(target_name, comm_id)

    def has_comm(self, comm_id: str) -> bool:
        return self.comms.has_comm(comm_id)

    # Kernel-level message hooks run after the future's own hooks for the same request
    def register_message_hook(self, msg_id: str, hook: MessageHook) -> None:
        if msg_id not in self._futures:
            logger.debug("No future for message hook", extra=self._extra(msg_id=msg_id))
            return
        self._message_hooks.setdefault(msg_id, MessageHooks()).add(hook)

    def remove_message_hook(self, msg_id: str, hook: MessageHook) -> None:
        hooks = self._message_hooks.get(msg_id)
        if hooks is not None:
            hooks.remove(hook)

    def _kernel_hooks(self, msg_id: str) -> List[MessageHooks]:
        hooks = self._message_hooks.get(msg_id)
        return [hooks] if hooks else []
