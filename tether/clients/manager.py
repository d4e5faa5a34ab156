"""
Managers keep track of what's running on the server and of the connections made through them.

 - KernelManager: running kernels, starting / connecting to / shutting down kernels
 - SessionManager: the same for sessions

.running() is a cached list, refreshed by .refresh_running() or periodically once
.start_polling() has been called. .running_changed fires whenever the cached list changes.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Set

import httpx

from tether.clients.api import APIClient, ResponseError
from tether.clients.kernel import KernelConnection
from tether.clients.session import SessionConnection
from tether.models.api.kernels import KernelModel, KernelSpecs
from tether.models.api.sessions import SessionModel
from tether.signals import Signal

logger = logging.getLogger(__name__)


class _BaseManager(ABC):
    def __init__(
        self,
        api_client: APIClient,
        poll_interval: float = 10.0,
        kernel_options: Optional[Dict[str, Any]] = None,
    ):
        self.api_client = api_client
        self.poll_interval = poll_interval
        # Passed through to every KernelConnection built by this manager
        self.kernel_options = dict(kernel_options or {})
        self.is_disposed = False
        self.running_changed = Signal("running_changed")  # emits the new running() list
        self._models: Dict[str, Any] = {}
        self._connections: List[Any] = []
        self._terminating: Set[str] = set()
        self._poll_task: Optional[asyncio.Task] = None

    def running(self) -> list:
        return list(self._models.values())

    def _set_running(self, models: list) -> None:
        new = {model.id: model for model in models}
        # Connections to things that no longer exist on the server won't hear anything again
        for conn in list(self._connections):
            if conn.id not in new:
                logger.info("Disposing connection to missing item", extra={"item_id": conn.id})
                conn.dispose()
        if new != self._models:
            self._models = new
            self.running_changed.emit(self.running())

    def _add_model(self, model) -> None:
        if self._models.get(model.id) != model:
            self._models[model.id] = model
            self.running_changed.emit(self.running())

    def _remove_model(self, item_id: str) -> None:
        if self._models.pop(item_id, None) is not None:
            self.running_changed.emit(self.running())

    def _track(self, conn) -> None:
        self._connections.append(conn)
        conn.disposed.connect(self._on_disposed)
        conn.terminated.connect(self._on_terminated)

    def _on_disposed(self, conn) -> None:
        if conn in self._connections:
            self._connections.remove(conn)

    def _on_terminated(self, conn) -> None:
        """The item is gone on the server, every other connection to it is told and disposed."""
        self._remove_model(conn.id)
        if conn.id in self._terminating:
            return
        self._terminating.add(conn.id)
        try:
            for other in list(self._connections):
                if other.id == conn.id and other is not conn and not other.is_disposed:
                    other.terminated.emit(other)
                    other.dispose()
        finally:
            self._terminating.discard(conn.id)

    def _terminate(self, item_id: str) -> None:
        for conn in list(self._connections):
            if conn.id == item_id and not conn.is_disposed:
                conn.terminated.emit(conn)
                break
        self._remove_model(item_id)
        self._dispose_connections(item_id)

    def _dispose_connections(self, item_id: str) -> None:
        for conn in list(self._connections):
            if conn.id == item_id:
                conn.dispose()

    @abstractmethod
    async def refresh_running(self) -> list:
        """Re-list from the server, update .running and dispose connections to what's gone."""

    def start_polling(self) -> None:
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll())

    async def _poll(self):
        while True:
            try:
                await self.refresh_running()
            except httpx.HTTPError as e:
                logger.warning(f"Failed to refresh running list: {e!r}")
            await asyncio.sleep(self.poll_interval)

    def dispose(self) -> None:
        if self.is_disposed:
            return
        self.is_disposed = True
        if self._poll_task is not None:
            self._poll_task.cancel()
        for conn in list(self._connections):
            conn.dispose()
        self._connections.clear()
        self._models.clear()
        self.running_changed.disconnect_all()


class KernelManager(_BaseManager):
    async def refresh_running(self) -> List[KernelModel]:
        self._set_running(await self.api_client.list_kernels())
        return self.running()

    async def start_new(self, name: Optional[str] = None) -> KernelConnection:
        model = await self.api_client.start_kernel(name)
        self._add_model(model)
        return await self.connect_to(model)

    async def connect_to(self, model: KernelModel) -> KernelConnection:
        """Open a new connection to a running kernel. Each call creates a new client_id."""
        kernel = KernelConnection(model, self.api_client, **self.kernel_options)
        self._track(kernel)
        await kernel.start()
        return kernel

    async def find_by_id(self, kernel_id: str) -> Optional[KernelModel]:
        if kernel_id not in self._models:
            await self.refresh_running()
        return self._models.get(kernel_id)

    async def get_specs(self) -> KernelSpecs:
        return await self.api_client.get_kernel_specs()

    async def shutdown(self, kernel_id: str) -> None:
        """Shut down a kernel and dispose every connection to it made through this manager."""
        try:
            await self.api_client.shutdown_kernel(kernel_id)
        except ResponseError as e:
            if e.response.status_code != 404:
                raise
        self._terminate(kernel_id)

    async def shutdown_all(self) -> None:
        await self.refresh_running()
        for kernel_id in list(self._models):
            await self.shutdown(kernel_id)


class SessionManager(_BaseManager):
    async def refresh_running(self) -> List[SessionModel]:
        models = await self.api_client.list_sessions()
        self._set_running(models)
        by_id = {model.id: model for model in models}
        for session in self._connections:
            if session.id in by_id:
                session.update_model(by_id[session.id])
        return self.running()

    async def start_new(
        self,
        path: str,
        name: Optional[str] = None,
        type: str = "notebook",
        kernel_name: Optional[str] = None,
    ) -> SessionConnection:
        model = await self.api_client.start_session(
            path, name=name or "", type=type, kernel_name=kernel_name
        )
        self._add_model(model)
        return await self.connect_to(model)

    async def connect_to(self, model: SessionModel) -> SessionConnection:
        session = SessionConnection(model, self.api_client, kernel_options=self.kernel_options)
        self._track(session)
        await session.start()
        return session

    async def find_by_id(self, session_id: str) -> Optional[SessionModel]:
        if session_id not in self._models:
            await self.refresh_running()
        return self._models.get(session_id)

    async def find_by_path(self, path: str) -> Optional[SessionModel]:
        for model in self._models.values():
            if model.path == path:
                return model
        await self.refresh_running()
        for model in self._models.values():
            if model.path == path:
                return model
        return None

    async def shutdown(self, session_id: str) -> None:
        try:
            await self.api_client.shutdown_session(session_id)
        except ResponseError as e:
            if e.response.status_code != 404:
                raise
        self._terminate(session_id)

    async def shutdown_all(self) -> None:
        await self.refresh_running()
        for session_id in list(self._models):
            await self.shutdown(session_id)
