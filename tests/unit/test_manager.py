import asyncio

import pytest

from tether.clients.manager import KernelManager, SessionManager, _BaseManager


@pytest.fixture
async def kernel_manager(api_client, kernel_options):
    manager = KernelManager(api_client, poll_interval=0.01, kernel_options=kernel_options)
    yield manager
    manager.dispose()
    await asyncio.sleep(0.01)


async def test_base_manager_is_abstract(api_client):
    with pytest.raises(TypeError):
        _BaseManager(api_client)


@pytest.fixture
async def session_manager(api_client, kernel_options):
    manager = SessionManager(api_client, poll_interval=0.01, kernel_options=kernel_options)
    yield manager
    manager.dispose()
    await asyncio.sleep(0.01)


class TestKernelManager:
    async def test_start_new(self, kernel_manager, server):
        changes = []
        kernel_manager.running_changed.connect(changes.append)

        kernel = await kernel_manager.start_new("python3")

        assert kernel.is_ready
        assert kernel.id in server.kernels
        assert [model.id for model in kernel_manager.running()] == [kernel.id]
        assert len(changes) == 1

    async def test_connections_get_their_own_client_id(self, kernel_manager):
        first = await kernel_manager.start_new()
        second = await kernel_manager.connect_to(first.model)

        assert first.id == second.id
        assert first.client_id != second.client_id

    async def test_shutdown(self, kernel_manager, server):
        kernel = await kernel_manager.start_new()
        terminated = []
        kernel.terminated.connect(terminated.append)

        await kernel_manager.shutdown(kernel.id)

        assert kernel.id not in server.kernels
        assert terminated == [kernel]
        assert kernel.is_disposed
        assert kernel_manager.running() == []

    async def test_shutdown_missing_kernel(self, kernel_manager, server):
        kernel = await kernel_manager.start_new()
        del server.kernels[kernel.id]

        await kernel_manager.shutdown(kernel.id)

        assert kernel.is_disposed

    async def test_shutdown_through_one_connection_disposes_the_others(self, kernel_manager):
        first = await kernel_manager.start_new()
        second = await kernel_manager.connect_to(first.model)
        terminated = []
        second.terminated.connect(terminated.append)

        await first.shutdown()

        assert terminated == [second]
        assert second.is_disposed
        assert kernel_manager.running() == []

    async def test_refresh_disposes_connections_to_missing_kernels(self, kernel_manager, server):
        kernel = await kernel_manager.start_new()
        other = server.add_kernel("ir")
        del server.kernels[kernel.id]

        running = await kernel_manager.refresh_running()

        assert [model.id for model in running] == [other.id]
        assert kernel.is_disposed

    async def test_find_by_id(self, kernel_manager, server):
        model = server.add_kernel()

        found = await kernel_manager.find_by_id(model.id)

        assert found.id == model.id
        assert await kernel_manager.find_by_id("no-such-kernel") is None

    async def test_get_specs(self, kernel_manager):
        specs = await kernel_manager.get_specs()

        assert specs.default == "python3"
        assert set(specs.kernelspecs) == {"python3", "ir"}

    async def test_shutdown_all(self, kernel_manager, server):
        server.add_kernel()
        server.add_kernel("ir")

        await kernel_manager.shutdown_all()

        assert server.kernels == {}
        assert kernel_manager.running() == []

    async def test_polling(self, kernel_manager, server, eventually):
        kernel_manager.start_polling()
        model = server.add_kernel()

        await eventually(lambda: [m.id for m in kernel_manager.running()] == [model.id])

    async def test_polling_survives_server_errors(self, kernel_manager, server, eventually):
        server.responses[("GET", "/api/kernels")] = server.not_found("kernels")
        kernel_manager.start_polling()
        await eventually(lambda: len(server.calls("GET", "/api/kernels")) >= 2)

        del server.responses[("GET", "/api/kernels")]
        model = server.add_kernel()

        await eventually(lambda: [m.id for m in kernel_manager.running()] == [model.id])


class TestSessionManager:
    async def test_start_new(self, session_manager, server):
        session = await session_manager.start_new(
            "notebooks/new.ipynb", name="new", kernel_name="ir"
        )

        assert session.path == "notebooks/new.ipynb"
        assert session.kernel.name == "ir"
        assert session.kernel.is_ready
        assert session.id in server.sessions

    async def test_find_by_path(self, session_manager, server):
        model = server.add_session("notebooks/existing.ipynb")

        found = await session_manager.find_by_path("notebooks/existing.ipynb")

        assert found.id == model.id
        assert await session_manager.find_by_path("notebooks/missing.ipynb") is None
        assert (await session_manager.find_by_id(model.id)).path == model.path

    async def test_refresh_updates_connections(self, session_manager, server):
        session = await session_manager.start_new("notebooks/a.ipynb")
        changed = []
        session.property_changed.connect(changed.append)
        server.sessions[session.id]["path"] = "notebooks/b.ipynb"

        await session_manager.refresh_running()

        assert changed == ["path"]
        assert session.path == "notebooks/b.ipynb"

    async def test_shutdown(self, session_manager, server):
        session = await session_manager.start_new("notebooks/a.ipynb")
        kernel = session.kernel
        twin = await session_manager.connect_to(session.model)

        await session_manager.shutdown(session.id)

        assert session.id not in server.sessions
        assert session.is_disposed
        assert twin.is_disposed
        assert kernel.is_disposed
        assert session_manager.running() == []

    async def test_shutdown_all(self, session_manager, server):
        server.add_session("one.ipynb")
        server.add_session("two.ipynb")

        await session_manager.shutdown_all()

        assert server.sessions == {}
