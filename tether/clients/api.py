"""
APIClient is the control plane: a thin async wrapper over the Jupyter server REST API for
kernels, sessions, and kernelspecs. The message protocol itself goes over websockets, see
tether.clients.kernel.KernelConnection.
"""
import logging
import os
from typing import Any, Dict, List, Optional, Type, TypeVar
from urllib.parse import quote, urlencode

import httpx
from pydantic import BaseModel, ValidationError

from tether.models.api.kernels import KernelModel, KernelSpecs
from tether.models.api.sessions import SessionModel

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class ResponseError(httpx.HTTPStatusError):
    """
    Raised when the server answers with an unexpected status code or a body that doesn't parse
    into the expected model. The original httpx.Response is available as .response for callers
    that want to inspect it. Network-level failures are not wrapped, they surface as
    httpx.TransportError.
    """

    def __init__(self, message: str, *, response: httpx.Response, traceback: str = ""):
        super().__init__(message, request=response.request, response=response)
        self.traceback = traceback

    @classmethod
    def from_response(cls, response: httpx.Response, message: Optional[str] = None):
        traceback = ""
        if message is None:
            message = f"Invalid response: {response.status_code} {response.reason_phrase}"
            # Jupyter server puts a human readable message and sometimes a traceback in the body
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                message = body.get("message") or message
                traceback = body.get("traceback") or ""
        return cls(message, response=response, traceback=traceback)


class APIClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        ws_url: Optional[str] = None,
        headers: Optional[dict] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: httpx.Timeout = httpx.Timeout(5.0),
    ):
        # base_url and token are saved as attributes because they're re-used when building
        # websocket urls for kernel connections
        self.base_url = (
            base_url or os.environ.get("JUPYTER_SERVER_URL") or "http://localhost:8888"
        ).rstrip("/")
        self.token = token if token is not None else os.environ.get("JUPYTER_TOKEN", "")
        self.ws_url = (ws_url or self.base_url.replace("http", "ws", 1)).rstrip("/")
        self.headers = {}
        if self.token:
            self.headers["Authorization"] = f"token {self.token}"
        if headers:
            self.headers.update(headers)

        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            transport=transport,
            timeout=timeout,
        )

    async def aclose(self):
        await self.client.aclose()

    def kernel_ws_url(self, kernel_id: str, client_id: str) -> str:
        """Websocket url for the kernel channels endpoint, session_id routes replies to us."""
        params = {"session_id": client_id}
        if self.token:
            params["token"] = self.token
        return f"{self.ws_url}/api/kernels/{quote(kernel_id)}/channels?{urlencode(params)}"

    def _check(self, resp: httpx.Response, *expected: int) -> httpx.Response:
        if resp.status_code not in expected:
            logger.debug(
                "Unexpected response status",
                extra={"url": str(resp.request.url), "status_code": resp.status_code},
            )
            raise ResponseError.from_response(resp)
        return resp

    def _parse(self, resp: httpx.Response, model: Type[ModelT]) -> ModelT:
        try:
            return model.model_validate(resp.json())
        except (ValueError, ValidationError) as e:
            raise ResponseError.from_response(
                resp, message=f"Invalid {model.__name__} in response: {e}"
            ) from e

    def _parse_list(self, resp: httpx.Response, model: Type[ModelT]) -> List[ModelT]:
        try:
            body = resp.json()
        except ValueError as e:
            raise ResponseError.from_response(resp, message="Invalid JSON in response") from e
        if not isinstance(body, list):
            raise ResponseError.from_response(
                resp, message=f"Expected a list of {model.__name__}, got {type(body).__name__}"
            )
        try:
            return [model.model_validate(item) for item in body]
        except ValidationError as e:
            raise ResponseError.from_response(
                resp, message=f"Invalid {model.__name__} in response: {e}"
            ) from e

    # Kernels
    async def list_kernels(self) -> List[KernelModel]:
        resp = self._check(await self.client.get("/api/kernels"), 200)
        return self._parse_list(resp, KernelModel)

    async def start_kernel(self, name: Optional[str] = None) -> KernelModel:
        body = {"name": name} if name else {}
        resp = self._check(await self.client.post("/api/kernels", json=body), 201)
        kernel = self._parse(resp, KernelModel)
        logger.info("Started kernel", extra={"kernel_id": kernel.id, "kernel_name": kernel.name})
        return kernel

    async def get_kernel(self, kernel_id: str) -> Optional[KernelModel]:
        """Return the kernel model, or None if the server doesn't know that kernel."""
        resp = await self.client.get(f"/api/kernels/{quote(kernel_id)}")
        if resp.status_code == 404:
            return None
        self._check(resp, 200)
        return self._parse(resp, KernelModel)

    async def interrupt_kernel(self, kernel_id: str) -> None:
        resp = await self.client.post(f"/api/kernels/{quote(kernel_id)}/interrupt")
        self._check(resp, 204)
        logger.info("Interrupted kernel", extra={"kernel_id": kernel_id})

    async def restart_kernel(self, kernel_id: str) -> KernelModel:
        # restarts can take a while on slow kernels
        resp = await self.client.post(f"/api/kernels/{quote(kernel_id)}/restart", timeout=60)
        self._check(resp, 200)
        kernel = self._parse(resp, KernelModel)
        logger.info("Restarted kernel", extra={"kernel_id": kernel_id})
        return kernel

    async def shutdown_kernel(self, kernel_id: str) -> None:
        resp = await self.client.delete(f"/api/kernels/{quote(kernel_id)}", timeout=60)
        self._check(resp, 204)
        logger.info("Shut down kernel", extra={"kernel_id": kernel_id})

    async def get_kernel_specs(self) -> KernelSpecs:
        resp = self._check(await self.client.get("/api/kernelspecs"), 200)
        return self._parse(resp, KernelSpecs)

    # Sessions bind a path (notebook, console) to a kernel on the server
    async def list_sessions(self) -> List[SessionModel]:
        resp = self._check(await self.client.get("/api/sessions"), 200)
        return self._parse_list(resp, SessionModel)

    async def start_session(
        self,
        path: str,
        name: str = "",
        type: str = "notebook",
        kernel_name: Optional[str] = None,
        kernel_id: Optional[str] = None,
    ) -> SessionModel:
        kernel: Dict[str, Any] = {}
        if kernel_id:
            kernel["id"] = kernel_id
        elif kernel_name:
            kernel["name"] = kernel_name
        body = {"path": path, "name": name, "type": type, "kernel": kernel}
        resp = self._check(await self.client.post("/api/sessions", json=body), 201)
        session = self._parse(resp, SessionModel)
        logger.info("Started session", extra={"session_id": session.id, "path": session.path})
        return session

    async def get_session(self, session_id: str) -> Optional[SessionModel]:
        resp = await self.client.get(f"/api/sessions/{quote(session_id)}")
        if resp.status_code == 404:
            return None
        self._check(resp, 200)
        return self._parse(resp, SessionModel)

    async def update_session(self, session_id: str, **fields) -> SessionModel:
        """PATCH a session. Use kernel={'name': ...} or kernel={'id': ...} to change kernels."""
        resp = await self.client.patch(f"/api/sessions/{quote(session_id)}", json=fields)
        self._check(resp, 200)
        return self._parse(resp, SessionModel)

    async def shutdown_session(self, session_id: str) -> None:
        resp = await self.client.delete(f"/api/sessions/{quote(session_id)}", timeout=60)
        self._check(resp, 204)
        logger.info("Shut down session", extra={"session_id": session_id})
