import asyncio
import json
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest
from websockets.exceptions import ConnectionClosedError

from tether import codec
from tether.clients.api import APIClient
from tether.clients.kernel import KernelConnection
from tether.clients.transport import BackoffPolicy
from tether.models.api.kernels import KernelModel
from tether.models.api.sessions import SessionModel
from tether.models.messages.base import BaseMessage, Header

_CLOSED = object()


class FakeWebSocket:
    """Client end of an in-memory websocket, frames the server sends go through .inbox"""

    def __init__(self, server: "KernelTester"):
        self.server = server
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def recv(self):
        item = await self.inbox.get()
        if item is _CLOSED:
            raise ConnectionClosedError(None, None)
        return item

    async def send(self, frame):
        if self.closed:
            raise ConnectionClosedError(None, None)
        self.server.handle_frame(frame)

    async def close(self):
        self.drop()

    def drop(self):
        if not self.closed:
            self.closed = True
            self.inbox.put_nowait(_CLOSED)


class KernelTester:
    """
    Fake kernel on the other side of the kernel channels websocket. Injected into KernelTransport
    / KernelConnection as the `connect` factory.

     - answers kernel_info_request on its own (status busy, kernel_info_reply, status idle)
     - everything else is passed to .on_message, if set
     - send_* helpers build kernel messages, parented to .parent_header unless told otherwise
    """

    def __init__(self):
        self.session = uuid.uuid4().hex  # the kernel's own session id
        self.sockets: List[FakeWebSocket] = []
        self.connect_calls: List[Tuple[str, Dict[str, Any]]] = []
        self.frames: List[Any] = []
        self.received: List[BaseMessage] = []
        self.refuse = False
        self.auto_kernel_info = True
        self.on_message: Optional[Callable[[BaseMessage], Any]] = None
        self.parent_header: Optional[Header] = None

    @property
    def ws(self) -> FakeWebSocket:
        return self.sockets[-1]

    async def connect(self, url: str, **kwargs) -> FakeWebSocket:
        self.connect_calls.append((url, kwargs))
        if self.refuse:
            raise OSError("Connection refused")
        ws = FakeWebSocket(self)
        self.sockets.append(ws)
        return ws

    def drop(self):
        self.ws.drop()

    def handle_frame(self, frame):
        self.frames.append(frame)
        try:
            msg = codec.parse_frame(frame)
        except codec.MalformedMessageError:
            return
        self.received.append(msg)
        if msg.msg_type == "kernel_info_request" and self.auto_kernel_info:
            self.send_status("busy", parent=msg.header)
            self.send_reply(msg, {"protocol_version": "5.3", "implementation": "fake"})
            self.send_status("idle", parent=msg.header)
            return
        if self.on_message is not None:
            self.on_message(msg)

    def requests(self, msg_type: str) -> List[BaseMessage]:
        return [msg for msg in self.received if msg.msg_type == msg_type]

    def make_message(
        self,
        msg_type: str,
        channel: str,
        content: Optional[dict] = None,
        parent: Optional[Header] = None,
        msg_id: Optional[str] = None,
    ) -> BaseMessage:
        return codec.create_message(
            msg_type,
            channel,
            content=content,
            session=self.session,
            username="kernel",
            msg_id=msg_id,
            parent_header=parent if parent is not None else self.parent_header,
        )

    def send(self, msg: BaseMessage) -> str:
        self.ws.inbox.put_nowait(codec.serialize(msg))
        return msg.msg_id

    def send_raw(self, frame):
        self.ws.inbox.put_nowait(frame)

    def send_message(
        self,
        msg_type: str,
        channel: str,
        content: Optional[dict] = None,
        parent: Optional[Header] = None,
        msg_id: Optional[str] = None,
    ) -> str:
        return self.send(self.make_message(msg_type, channel, content, parent, msg_id))

    def send_status(self, state: str, parent: Optional[Header] = None, msg_id=None) -> str:
        return self.send_message("status", "iopub", {"execution_state": state}, parent, msg_id)

    def send_stream(self, text: str, parent: Optional[Header] = None, msg_id=None) -> str:
        return self.send_message(
            "stream", "iopub", {"name": "stdout", "text": text}, parent, msg_id
        )

    def send_reply(
        self, request: BaseMessage, content: Optional[dict] = None, msg_id: Optional[str] = None
    ) -> str:
        reply_type = request.msg_type.replace("_request", "_reply")
        content = {"status": "ok", **(content or {})}
        return self.send_message(reply_type, request.channel, content, request.header, msg_id)

    def reply_to_execute(self, request: BaseMessage, text: Optional[str] = None):
        """The usual busy / output / reply / idle sequence for an execute_request"""
        self.send_status("busy", parent=request.header)
        if text is not None:
            self.send_stream(text, parent=request.header)
        self.send_reply(request, {"execution_count": 1})
        self.send_status("idle", parent=request.header)


class FakeJupyterServer:
    """
    In-memory stand in for the Jupyter server REST API, mounted with httpx.MockTransport.
    .responses can override any (method, path) with a canned response.
    """

    def __init__(self):
        self.kernels: Dict[str, dict] = {}
        self.sessions: Dict[str, dict] = {}
        self.requests: List[httpx.Request] = []
        self.responses: Dict[Tuple[str, str], httpx.Response] = {}
        self.kernelspecs = {
            "default": "python3",
            "kernelspecs": {
                "python3": {
                    "name": "python3",
                    "spec": {"display_name": "Python 3", "language": "python", "argv": []},
                    "resources": {},
                },
                "ir": {
                    "name": "ir",
                    "spec": {"display_name": "R", "language": "R", "argv": []},
                    "resources": {},
                },
            },
        }

    def add_kernel(self, name: str = "python3") -> KernelModel:
        kernel = {"id": uuid.uuid4().hex, "name": name, "execution_state": "idle"}
        self.kernels[kernel["id"]] = kernel
        return KernelModel.model_validate(kernel)

    def add_session(self, path: str, kernel_name: str = "python3") -> SessionModel:
        kernel = self.add_kernel(kernel_name)
        session = {
            "id": uuid.uuid4().hex,
            "path": path,
            "name": path.rsplit("/", 1)[-1],
            "type": "notebook",
            "kernel": self.kernels[kernel.id],
        }
        self.sessions[session["id"]] = session
        return SessionModel.model_validate(session)

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    @staticmethod
    def not_found(what: str) -> httpx.Response:
        return httpx.Response(404, json={"message": f"{what} not found", "reason": None})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        override = self.responses.get((request.method, request.url.path))
        if override is not None:
            # a fresh copy each time, the same override can answer many requests
            return httpx.Response(
                override.status_code, headers=override.headers, content=override.content
            )
        parts = request.url.path.strip("/").split("/")[1:]  # drop leading "api"
        body = json.loads(request.content) if request.content else {}

        if parts == ["kernelspecs"]:
            return httpx.Response(200, json=self.kernelspecs)
        if parts[0] == "kernels":
            return self._kernels(request.method, parts[1:], body)
        if parts[0] == "sessions":
            return self._sessions(request.method, parts[1:], body)
        return httpx.Response(404)

    def _kernels(self, method: str, parts: List[str], body) -> httpx.Response:
        if not parts:
            if method == "GET":
                return httpx.Response(200, json=list(self.kernels.values()))
            model = self.add_kernel(body.get("name") or "python3")
            return httpx.Response(201, json=self.kernels[model.id])

        kernel = self.kernels.get(parts[0])
        if kernel is None:
            return self.not_found(f"Kernel {parts[0]}")
        action = parts[1] if len(parts) > 1 else None
        if action == "interrupt":
            return httpx.Response(204)
        if action == "restart":
            return httpx.Response(200, json=kernel)
        if method == "GET":
            return httpx.Response(200, json=kernel)
        if method == "DELETE":
            del self.kernels[kernel["id"]]
            return httpx.Response(204)
        return httpx.Response(405)

    def _sessions(self, method: str, parts: List[str], body) -> httpx.Response:
        if not parts:
            if method == "GET":
                return httpx.Response(200, json=list(self.sessions.values()))
            kernel_body = body.get("kernel") or {}
            if kernel_body.get("id") in self.kernels:
                kernel = self.kernels[kernel_body["id"]]
            else:
                kernel = self.kernels[self.add_kernel(kernel_body.get("name") or "python3").id]
            session = {
                "id": uuid.uuid4().hex,
                "path": body["path"],
                "name": body.get("name", ""),
                "type": body.get("type", "notebook"),
                "kernel": kernel,
            }
            self.sessions[session["id"]] = session
            return httpx.Response(201, json=session)

        session = self.sessions.get(parts[0])
        if session is None:
            return self.not_found(f"Session {parts[0]}")
        if method == "GET":
            return httpx.Response(200, json=session)
        if method == "DELETE":
            del self.sessions[session["id"]]
            return httpx.Response(204)
        if method == "PATCH":
            for key in ("path", "name", "type"):
                if key in body:
                    session[key] = body[key]
            kernel_body = body.get("kernel")
            if kernel_body:
                if kernel_body.get("id"):
                    if kernel_body["id"] not in self.kernels:
                        return self.not_found(f"Kernel {kernel_body['id']}")
                    session["kernel"] = self.kernels[kernel_body["id"]]
                else:
                    model = self.add_kernel(kernel_body.get("name") or "python3")
                    session["kernel"] = self.kernels[model.id]
            return httpx.Response(200, json=session)
        return httpx.Response(405)


@pytest.fixture
def server() -> FakeJupyterServer:
    return FakeJupyterServer()


@pytest.fixture
async def api_client(server: FakeJupyterServer) -> APIClient:
    client = APIClient(
        base_url="http://jupyter.test",
        token="s3cret",
        transport=httpx.MockTransport(server.handler),
    )
    yield client
    await client.aclose()


@pytest.fixture
def kernel_tester() -> KernelTester:
    return KernelTester()


@pytest.fixture
def fast_backoff() -> BackoffPolicy:
    return BackoffPolicy(factor=0, max_attempts=3)


@pytest.fixture
def kernel_options(kernel_tester: KernelTester, fast_backoff: BackoffPolicy) -> dict:
    return {"backoff_policy": fast_backoff, "connect": kernel_tester.connect}


@pytest.fixture
async def kernel_factory(server, api_client, kernel_options):
    created: List[KernelConnection] = []

    async def make(start: bool = True, model: Optional[KernelModel] = None, **kwargs):
        options = {**kernel_options, **kwargs}
        kernel = KernelConnection(model or server.add_kernel(), api_client, **options)
        created.append(kernel)
        if start:
            await kernel.start()
        return kernel

    yield make

    for kernel in created:
        kernel.dispose()
        await kernel.transport.close()


@pytest.fixture
async def kernel(kernel_factory) -> KernelConnection:
    return await kernel_factory()


@pytest.fixture
def eventually():
    """Poll a predicate until it's true, giving queued message handling a chance to run"""

    async def wait(predicate: Callable[[], bool], timeout: float = 2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("Condition was not met in time")
            await asyncio.sleep(0.005)

    return wait
