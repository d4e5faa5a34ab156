"""
SessionConnection binds a server-side session (a path, e.g. a notebook, and its metadata) to a
KernelConnection.

The kernel can be swapped out with .change_kernel(). The session's status_changed /
iopub_message / unhandled_message / any_message signals forward whatever kernel is currently
bound, so subscribers connect once to the session and never have to follow a kernel swap.
"""
import logging
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from tether.clients.api import APIClient, ResponseError
from tether.clients.kernel import KernelConnection
from tether.models.api.kernels import KernelModel
from tether.models.api.sessions import SessionModel
from tether.signals import Signal

logger = logging.getLogger(__name__)


class SessionIsDisposedError(RuntimeError):
    pass


class KernelChangedArgs(NamedTuple):
    old_value: Optional[KernelConnection]
    new_value: Optional[KernelConnection]


class SessionConnection:
    # Properties of the session model that emit .property_changed when they change
    PROPERTIES = ("path", "name", "type")

    def __init__(
        self,
        model: SessionModel,
        api_client: APIClient,
        kernel_options: Optional[Dict[str, Any]] = None,
    ):
        self.model = model
        self.api_client = api_client
        # Passed through to every KernelConnection this session creates
        self.kernel_options = dict(kernel_options or {})
        self.kernel: Optional[KernelConnection] = None
        self.is_disposed = False

        self.status_changed = Signal("status_changed")
        self.iopub_message = Signal("iopub_message")
        self.unhandled_message = Signal("unhandled_message")
        self.any_message = Signal("any_message")
        self.kernel_changed = Signal("kernel_changed")  # emits KernelChangedArgs
        self.property_changed = Signal("property_changed")  # emits property name
        self.terminated = Signal("terminated")  # emits SessionConnection
        self.disposed = Signal("disposed")  # emits SessionConnection

        self._kernel_disconnects: List[Callable[[], None]] = []
        if model.kernel is not None:
            self._bind(self._make_kernel(model.kernel))

    def __repr__(self):
        return f"<SessionConnection id={self.id!r} path={self.path!r}>"

    @property
    def id(self) -> str:
        return self.model.id

    @property
    def path(self) -> str:
        return self.model.path

    @property
    def name(self) -> str:
        return self.model.name

    @property
    def type(self) -> str:
        return self.model.type

    def _extra(self) -> dict:
        return {"session_id": self.id, "kernel_id": self.kernel.id if self.kernel else None}

    def _check_disposed(self):
        if self.is_disposed:
            raise SessionIsDisposedError(f"Session {self.id} is disposed")

    def _make_kernel(self, model: KernelModel) -> KernelConnection:
        return KernelConnection(model, self.api_client, **self.kernel_options)

    def _bind(self, kernel: KernelConnection) -> None:
        self.kernel = kernel
        self._kernel_disconnects = [
            kernel.status_changed.connect(self.status_changed.emit),
            kernel.iopub_message.connect(self.iopub_message.emit),
            kernel.unhandled_message.connect(self.unhandled_message.emit),
            kernel.any_message.connect(self.any_message.emit),
        ]

    def _unbind(self) -> Optional[KernelConnection]:
        for disconnect in self._kernel_disconnects:
            disconnect()
        self._kernel_disconnects = []
        kernel, self.kernel = self.kernel, None
        return kernel

    async def start(self) -> None:
        """Connect to the session's kernel, if it has one."""
        self._check_disposed()
        if self.kernel is not None:
            await self.kernel.start()

    def update_model(self, model: SessionModel) -> None:
        """Take a fresh model from the server, emitting .property_changed for what changed."""
        old = self.model
        self.model = model
        for prop in self.PROPERTIES:
            if getattr(old, prop) != getattr(model, prop):
                self.property_changed.emit(prop)

    async def change_kernel(
        self, name: Optional[str] = None, id: Optional[str] = None
    ) -> KernelConnection:
        """
        Point the session at a different kernel, either a new one started from the kernelspec
        `name` or an already running kernel `id`. The old kernel connection is disposed (its
        futures and comms go with it), the kernel process itself is left to the server.
        """
        self._check_disposed()
        if not name and not id:
            raise ValueError("change_kernel needs a kernel name or id")
        old = self._unbind()
        if old is not None:
            old.dispose()

        kernel = {"id": id} if id else {"name": name}
        model = await self.api_client.update_session(self.id, kernel=kernel)
        self._check_disposed()
        self.update_model(model)
        if model.kernel is None:
            raise RuntimeError(f"Session {self.id} has no kernel after changing kernels")

        new = self._make_kernel(model.kernel)
        self._bind(new)
        await new.start()
        logger.info("Changed session kernel", extra=self._extra())
        self.kernel_changed.emit(KernelChangedArgs(old, new))
        return new

    async def _patch(self, **fields) -> None:
        self._check_disposed()
        model = await self.api_client.update_session(self.id, **fields)
        self._check_disposed()
        self.update_model(model)

    async def set_path(self, path: str) -> None:
        await self._patch(path=path)

    async def set_name(self, name: str) -> None:
        await self._patch(name=name)

    async def set_type(self, type: str) -> None:
        await self._patch(type=type)

    async def shutdown(self) -> None:
        """Delete the session on the server, a session that's already gone is not an error."""
        self._check_disposed()
        try:
            await self.api_client.shutdown_session(self.id)
        except ResponseError as e:
            if e.response.status_code != 404:
                raise
            logger.info("Session was already shut down", extra=self._extra())
        self.terminated.emit(self)
        self.dispose()

    def dispose(self) -> None:
        if self.is_disposed:
            return
        self.is_disposed = True
        kernel = self._unbind()
        if kernel is not None:
            kernel.dispose()
        self.disposed.emit(self)
        for signal in (
            self.status_changed,
            self.iopub_message,
            self.unhandled_message,
            self.any_message,
            self.kernel_changed,
            self.property_changed,
            self.terminated,
            self.disposed,
        ):
            signal.disconnect_all()
