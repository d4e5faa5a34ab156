"""
KernelFuture ties one outgoing request to everything the kernel sends back about it.

A request is finished when both of these have been seen, in either order:
 - the reply on the channel the request went out on (shell or control)
 - an iopub status message with execution_state idle whose parent is the request

Requests that don't get a reply (comm_open / comm_msg / comm_close) are finished by the idle
status alone, see expect_reply.

Message hooks get the first look at iopub messages for the request. Hooks run most recently
registered first, one at a time, and any hook returning False stops the remaining hooks and
the future's .on_iopub callback. Hooks never affect whether the future completes.
"""
import asyncio
import enum
import inspect
import logging
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Union

from tether.models.messages.base import BaseMessage

logger = logging.getLogger(__name__)

MessageHook = Callable[[BaseMessage], Union[bool, None, Awaitable[Optional[bool]]]]
MessageCallback = Callable[[BaseMessage], Union[None, Awaitable[None]]]


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def content_field(msg: BaseMessage, key: str, default: Any = None) -> Any:
    """Read a content key whether content is a model or (for unmodeled messages) a dict."""
    content = msg.content
    if isinstance(content, dict):
        return content.get(key, default)
    return getattr(content, key, default)


def execution_state(msg: BaseMessage) -> Optional[str]:
    """Execution state of a status message, or None for anything else."""
    if msg.channel != "iopub" or msg.msg_type != "status":
        return None
    return content_field(msg, "execution_state")


class MessageHooks:
    """
    Ordered set of message hooks. Adding a hook that is already present moves it to the front.

    .process() works on a snapshot of the hooks taken when it starts: hooks added while it is
    running first see the next message, hooks removed while it is running are skipped if they
    haven't run yet.
    """

    def __init__(self):
        self._hooks: List[MessageHook] = []

    def __len__(self):
        return len(self._hooks)

    def __contains__(self, hook: MessageHook):
        return hook in self._hooks

    def add(self, hook: MessageHook) -> None:
        self.remove(hook)
        self._hooks.append(hook)

    def remove(self, hook: MessageHook) -> None:
        if hook in self._hooks:
            self._hooks.remove(hook)

    def clear(self) -> None:
        self._hooks.clear()

    async def process(self, msg: BaseMessage) -> bool:
        """Run hooks newest first. Returns False if a hook asked to stop processing."""
        for hook in reversed(list(self._hooks)):
            if hook not in self._hooks:
                continue
            try:
                result = await maybe_await(hook(msg))
            except Exception:
                logger.exception(
                    "Error in message hook",
                    extra={"msg_id": msg.msg_id, "msg_type": msg.msg_type, "hook": repr(hook)},
                )
                continue
            if result is False:
                return False
        return True


class FutureState(str, enum.Enum):
    pending = "pending"
    reply_received = "reply_received"
    idle_received = "idle_received"
    done = "done"
    disposed = "disposed"


class KernelFuture:
    """
    Don't build these directly, KernelConnection.send_shell_message / .request_execute / etc
    create and register them before the request goes out on the wire.

    Use case:

    future = kernel.request_execute({"code": "1 + 1"})
    future.on_iopub = lambda msg: print(msg.msg_type)
    reply = await future.done
    """

    def __init__(
        self,
        msg: BaseMessage,
        expect_reply: bool = True,
        dispose_on_done: bool = True,
        on_dispose: Optional[Callable[["KernelFuture"], None]] = None,
    ):
        self.msg = msg
        self.expect_reply = expect_reply
        self.dispose_on_done = dispose_on_done

        self.on_reply: Optional[MessageCallback] = None
        self.on_iopub: Optional[MessageCallback] = None
        self.on_stdin: Optional[MessageCallback] = None

        self.state = FutureState.pending
        # Resolves to the reply message (None when expect_reply is False)
        self.done: asyncio.Future = asyncio.get_running_loop().create_future()

        self._hooks = MessageHooks()
        self._reply: Optional[BaseMessage] = None
        self._reply_seen = False
        self._idle_seen = False
        self._on_dispose = on_dispose

    def __repr__(self):
        return f"<KernelFuture msg_id={self.msg_id!r} state={self.state.value}>"

    @property
    def msg_id(self) -> str:
        return self.msg.msg_id

    @property
    def is_disposed(self) -> bool:
        return self.state == FutureState.disposed

    @property
    def reply(self) -> Optional[BaseMessage]:
        return self._reply

    def register_message_hook(self, hook: MessageHook) -> None:
        if self.is_disposed:
            return
        self._hooks.add(hook)

    def remove_message_hook(self, hook: MessageHook) -> None:
        self._hooks.remove(hook)

    async def handle_msg(self, msg: BaseMessage, extra_hooks: Iterable[MessageHooks] = ()) -> None:
        """
        Route one message whose parent is this future's request. extra_hooks are run after the
        future's own hooks, KernelConnection passes the kernel-level hooks for this msg_id.
        """
        if self.is_disposed:
            return
        if msg.channel == "iopub":
            await self._handle_iopub(msg, extra_hooks)
        elif msg.channel == "stdin":
            await self._call(self.on_stdin, msg)
        elif msg.channel in ("shell", "control"):
            await self._handle_reply(msg)

    async def _handle_iopub(self, msg: BaseMessage, extra_hooks: Iterable[MessageHooks]):
        proceed = await self._hooks.process(msg)
        for hooks in extra_hooks:
            if not proceed or self.is_disposed:
                break
            proceed = await hooks.process(msg)
        if proceed and not self.is_disposed:
            await self._call(self.on_iopub, msg)
        if execution_state(msg) == "idle" and not self.is_disposed:
            self._idle_seen = True
            self._advance()

    async def _handle_reply(self, msg: BaseMessage):
        self._reply = msg
        await self._call(self.on_reply, msg)
        if self.is_disposed:
            return
        self._reply_seen = True
        self._advance()

    async def _call(self, callback: Optional[MessageCallback], msg: BaseMessage):
        if callback is None:
            return
        try:
            await maybe_await(callback(msg))
        except Exception:
            logger.exception(
                "Error in future callback",
                extra={"msg_id": self.msg_id, "msg_type": msg.msg_type, "channel": msg.channel},
            )

    def _advance(self):
        if self.state == FutureState.done:
            return
        if self._idle_seen and (self._reply_seen or not self.expect_reply):
            self.state = FutureState.done
            if not self.done.done():
                self.done.set_result(self._reply)
            if self.dispose_on_done:
                self.dispose()
        elif self._reply_seen:
            self.state = FutureState.reply_received
        elif self._idle_seen:
            self.state = FutureState.idle_received

    def dispose(self) -> None:
        """
        Stop routing messages to this future and drop its hooks and callbacks. A future disposed
        before it finished never resolves .done.
        """
        if self.is_disposed:
            return
        self.state = FutureState.disposed
        self._hooks.clear()
        self.on_reply = self.on_iopub = self.on_stdin = None
        if self._on_dispose is not None:
            self._on_dispose(self)
