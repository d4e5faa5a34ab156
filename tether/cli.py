import asyncio
import logging
import sys
from typing import Optional

import typer

from tether.clients.api import APIClient
from tether.clients.kernel import KernelConnection
from tether.clients.manager import KernelManager
from tether.log_utils import setup_logging
from tether.models.messages.base import BaseMessage

app = typer.Typer(no_args_is_help=True)


def _print_output(msg: BaseMessage):
    if msg.msg_type == "stream":
        stream = sys.stderr if msg.content.name == "stderr" else sys.stdout
        stream.write(msg.content.text)
        stream.flush()
    elif msg.msg_type in ("execute_result", "display_data"):
        print(msg.content.data.get("text/plain", ""))
    elif msg.msg_type == "error":
        print("\n".join(msg.content.traceback) or f"{msg.content.ename}: {msg.content.evalue}")


async def _run(
    code: str,
    kernel_id: Optional[str] = None,
    kernel_name: Optional[str] = None,
    api_url: Optional[str] = None,
) -> int:
    api_client = APIClient(base_url=api_url)
    manager = KernelManager(api_client)
    try:
        if kernel_id:
            model = await manager.find_by_id(kernel_id)
            if model is None:
                raise typer.BadParameter(f"No running kernel with id {kernel_id}")
            kernel = await manager.connect_to(model)
        else:
            kernel = await manager.start_new(kernel_name)

        future = kernel.request_execute({"code": code}, dispose_on_done=False)
        future.on_iopub = _print_output
        reply = await future.done
        status = reply.content.status

        if not kernel_id:
            await manager.shutdown(kernel.id)
        return 0 if status == "ok" else 1
    finally:
        manager.dispose()
        await api_client.aclose()


@app.command()
def run(
    code: str,
    kernel_id: Optional[str] = None,
    kernel_name: Optional[str] = None,
    api_url: Optional[str] = None,
):
    """Execute CODE on a kernel and print its output. Starts (and stops) a kernel if needed."""
    raise typer.Exit(asyncio.run(_run(code, kernel_id, kernel_name, api_url)))


async def _tail_kernel(kernel_id: str, api_url: Optional[str] = None):
    setup_logging()
    logging.getLogger("tether.clients.kernel").setLevel(logging.DEBUG)
    api_client = APIClient(base_url=api_url)
    model = await api_client.get_kernel(kernel_id)
    if model is None:
        raise typer.BadParameter(f"No running kernel with id {kernel_id}")
    kernel = KernelConnection(model, api_client)
    kernel.iopub_message.connect(
        lambda msg: print(msg.model_dump_json(exclude={"buffers", "msg_type"}))
    )
    print("Kernel connection starting")
    await kernel.start()
    print("Kernel connection ready")
    try:
        while not kernel.is_disposed:
            await asyncio.sleep(1)
    finally:
        kernel.dispose()
        await api_client.aclose()


@app.command()
def tail(kernel_id: str, api_url: Optional[str] = None):
    """Log every iopub message a running kernel broadcasts, until interrupted."""
    asyncio.run(_tail_kernel(kernel_id=kernel_id, api_url=api_url))


async def _kernelspecs(api_url: Optional[str] = None):
    api_client = APIClient(base_url=api_url)
    try:
        specs = await api_client.get_kernel_specs()
    finally:
        await api_client.aclose()
    for name, spec in specs.kernelspecs.items():
        default = " (default)" if name == specs.default else ""
        print(f"{name}{default}: {spec.spec.display_name} [{spec.spec.language}]")


@app.command()
def kernelspecs(api_url: Optional[str] = None):
    """List the kernel specs available on the server."""
    asyncio.run(_kernelspecs(api_url))


if __name__ == "__main__":
    app()
