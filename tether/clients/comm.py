"""
Comms are bidirectional channels between a frontend object and a kernel object, multiplexed
over the kernel's shell (client -> kernel) and iopub (kernel -> client) channels.

 - Kernel-initiated comms: the kernel sends comm_open with a target_name. If a handler was
   registered for that target, a Comm is created and handed to it. Unknown targets are ignored
 - Client-initiated comms: KernelConnection.create_comm() builds a Comm, .open() tells the kernel
 - comm_msg is delivered to Comm.on_msg, comm_close to Comm.on_close before the comm is disposed
"""
import asyncio
import contextlib
import logging
import uuid
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from tether.clients.future import KernelFuture, content_field, maybe_await
from tether.models.messages.base import BaseMessage
from tether.models.messages.channels.shell import (
    CommCloseContent,
    CommMsgContent,
    CommOpenContent,
)

if TYPE_CHECKING:
    from tether.clients.kernel import KernelConnection

logger = logging.getLogger(__name__)

CommCallback = Callable[[BaseMessage], Union[None, Awaitable[None]]]
CommTargetHandler = Callable[["Comm", BaseMessage], Union[None, Awaitable[None]]]

# Tasks for async on_close callbacks run from a sync .close(), referenced until they finish
_background_tasks: Set[asyncio.Task] = set()


class CommClosedError(RuntimeError):
    pass


class Comm:
    def __init__(self, target_name: str, comm_id: str, kernel: "KernelConnection"):
        self.target_name = target_name
        self.comm_id = comm_id
        self.on_msg: Optional[CommCallback] = None
        self.on_close: Optional[CommCallback] = None
        self.is_disposed = False
        self._kernel = kernel

    def __repr__(self):
        return f"<Comm {self.target_name!r} comm_id={self.comm_id!r}>"

    def _send(
        self,
        msg_type: str,
        content,
        metadata: Optional[dict],
        buffers: Optional[List[bytes]],
        dispose_on_done: bool = True,
    ) -> KernelFuture:
        if self.is_disposed:
            raise CommClosedError(f"Comm {self.comm_id} is closed")
        msg = self._kernel.create_message(
            msg_type, "shell", content=content, metadata=metadata, buffers=buffers
        )
        return self._kernel.send_shell_message(
            msg, expect_reply=False, dispose_on_done=dispose_on_done
        )

    def open(
        self,
        data: Optional[Dict[str, Any]] = None,
        metadata: Optional[dict] = None,
        buffers: Optional[List[bytes]] = None,
    ) -> KernelFuture:
        content = CommOpenContent(
            comm_id=self.comm_id, target_name=self.target_name, data=data or {}
        )
        return self._send("comm_open", content, metadata, buffers)

    def send(
        self,
        data: Optional[Dict[str, Any]] = None,
        metadata: Optional[dict] = None,
        buffers: Optional[List[bytes]] = None,
        dispose_on_done: bool = True,
    ) -> KernelFuture:
        content = CommMsgContent(comm_id=self.comm_id, data=data or {})
        return self._send("comm_msg", content, metadata, buffers, dispose_on_done)

    def close(
        self,
        data: Optional[Dict[str, Any]] = None,
        metadata: Optional[dict] = None,
        buffers: Optional[List[bytes]] = None,
    ) -> KernelFuture:
        """
        Tell the kernel the comm is closed, run .on_close locally and dispose the comm. An async
        .on_close is scheduled, not awaited.
        """
        content = CommCloseContent(comm_id=self.comm_id, data=data or {})
        future = self._send("comm_close", content, metadata, buffers)
        on_close = self.on_close
        if on_close is not None:
            try:
                result = on_close(future.msg)
            except Exception:
                logger.exception("Error in comm on_close", extra={"comm_id": self.comm_id})
            else:
                if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
                    task = asyncio.ensure_future(result)
                    _background_tasks.add(task)
                    task.add_done_callback(_background_tasks.discard)
        self.dispose()
        return future

    async def handle_msg(self, msg: BaseMessage) -> None:
        if self.on_msg is not None:
            await maybe_await(self.on_msg(msg))

    async def handle_close(self, msg: BaseMessage) -> None:
        if self.on_close is not None:
            await maybe_await(self.on_close(msg))

    def dispose(self) -> None:
        if self.is_disposed:
            return
        self.is_disposed = True
        self.on_msg = self.on_close = None
        self._kernel.comms.unregister(self)


class CommRegistry:
    """Per-kernel map of comm targets and open comms."""

    def __init__(self, kernel: "KernelConnection"):
        self._kernel = kernel
        self.targets: Dict[str, CommTargetHandler] = {}
        self.comms: Dict[str, Comm] = {}

    def register_target(self, target_name: str, handler: CommTargetHandler) -> Callable:
        """Register a handler for kernel-initiated comms, returns a function to remove it."""
        self.targets[target_name] = handler

        def deregister():
            self.remove_target(target_name, handler)

        return deregister

    def remove_target(self, target_name: str, handler: Optional[CommTargetHandler] = None):
        if target_name not in self.targets:
            return
        if handler is None or self.targets[target_name] is handler:
            del self.targets[target_name]

    def has_comm(self, comm_id: str) -> bool:
        return comm_id in self.comms

    def create_comm(self, target_name: str, comm_id: Optional[str] = None) -> Comm:
        comm_id = comm_id or uuid.uuid4().hex
        if comm_id in self.comms:
            raise ValueError(f"Comm {comm_id} already exists")
        comm = Comm(target_name, comm_id, self._kernel)
        self.comms[comm_id] = comm
        return comm

    def unregister(self, comm: Comm) -> None:
        if self.comms.get(comm.comm_id) is comm:
            del self.comms[comm.comm_id]

    async def handle_open(self, msg: BaseMessage) -> None:
        comm_id = content_field(msg, "comm_id")
        target_name = content_field(msg, "target_name")
        extra = {"comm_id": comm_id, "target_name": target_name, "kernel_id": self._kernel.id}
        handler = self.targets.get(target_name)
        if handler is None:
            logger.warning("No comm target registered, ignoring comm_open", extra=extra)
            return
        if comm_id in self.comms:
            logger.warning("Comm already exists, ignoring comm_open", extra=extra)
            return

        comm = Comm(target_name, comm_id, self._kernel)
        self.comms[comm_id] = comm
        try:
            await maybe_await(handler(comm, msg))
        except Exception:
            logger.exception("Exception opening new comm", extra=extra)
            from tether.clients.kernel import KernelIsDeadError, KernelIsDisposedError

            with contextlib.suppress(KernelIsDeadError, KernelIsDisposedError, CommClosedError):
                comm.close()
            comm.dispose()
            return
        logger.debug("Opened comm", extra=extra)

    async def handle_msg(self, msg: BaseMessage) -> None:
        comm_id = content_field(msg, "comm_id")
        comm = self.comms.get(comm_id)
        if comm is None:
            logger.debug("comm_msg for unknown comm", extra={"comm_id": comm_id})
            return
        try:
            await comm.handle_msg(msg)
        except Exception:
            logger.exception("Exception handling comm msg", extra={"comm_id": comm_id})

    async def handle_close(self, msg: BaseMessage) -> None:
        comm_id = content_field(msg, "comm_id")
        comm = self.comms.get(comm_id)
        if comm is None:
            logger.error("comm_close for unknown comm", extra={"comm_id": comm_id})
            return
        self.unregister(comm)
        try:
            await comm.handle_close(msg)
        except Exception:
            logger.exception("Exception closing comm", extra={"comm_id": comm_id})
        comm.dispose()

    def clear(self) -> None:
        """Dispose all open comms, registered targets are kept."""
        for comm in list(self.comms.values()):
            comm.dispose()
        self.comms.clear()

    def dispose(self) -> None:
        self.clear()
        self.targets.clear()
