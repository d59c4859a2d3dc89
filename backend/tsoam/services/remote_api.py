"""
Client for the church-management REST API that offline operations replay against.
Each module maps to a fixed endpoint path under the API base URL.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)


class RemoteRejected(Exception):
    """The remote endpoint refused an operation, or could not be reached."""

    def __init__(self, status_code: Optional[int], reason: str):
        self.status_code = status_code
        self.reason = reason
        if status_code is None:
            super().__init__(reason)
        else:
            super().__init__(f"HTTP {status_code}: {reason}")


class UnknownModule(Exception):
    """An operation names a module with no configured endpoint."""

    def __init__(self, module: str):
        self.module = module
        super().__init__(f"Unknown module: {module}")


class RemoteApi:
    """Async HTTP client for module endpoints.

    ``token_provider`` is called before every request; when it returns a token
    the request carries ``Authorization: Bearer <token>``.
    """

    def __init__(
        self,
        base_url: str,
        module_endpoints: Dict[str, str],
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        timeout: Optional[float] = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.module_endpoints = dict(module_endpoints)
        self.token_provider = token_provider or (lambda: None)
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )

    def endpoint_for(self, module: str) -> str:
        endpoint = self.module_endpoints.get(module)
        if not endpoint:
            raise UnknownModule(module)
        return endpoint

    async def create(self, module: str, payload: Dict[str, Any]) -> Any:
        """POST the payload; returns the created resource."""
        response = await self._request("POST", self.endpoint_for(module), json=payload)
        return self._json_body(response)

    async def update(self, module: str, payload: Dict[str, Any]) -> Any:
        """PUT the payload against ``payload["id"]``; returns the updated resource."""
        url = self._resource_url(module, payload)
        response = await self._request("PUT", url, json=payload)
        return self._json_body(response)

    async def delete(self, module: str, payload: Dict[str, Any]) -> None:
        url = self._resource_url(module, payload)
        await self._request("DELETE", url)

    async def list(self, module: str) -> List[Any]:
        """GET the module listing, used to warm the offline cache."""
        response = await self._request("GET", self.endpoint_for(module))
        body = self._json_body(response)
        if isinstance(body, dict):
            # Some endpoints wrap listings as {"data": [...]}
            body = body.get("data", [])
        return list(body or [])

    async def aclose(self) -> None:
        await self._client.aclose()

    def _resource_url(self, module: str, payload: Dict[str, Any]) -> str:
        endpoint = self.endpoint_for(module)
        resource_id = (payload or {}).get("id")
        if resource_id is None:
            raise RemoteRejected(None, f"{module} operation payload has no id")
        return f"{endpoint}/{resource_id}"

    @staticmethod
    def _json_body(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            logger.warning("Non-JSON response from %s", response.request.url)
            return None

    async def _request(self, method: str, url: str, json: Any = None) -> httpx.Response:
        headers = {}
        token = self.token_provider()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            response = await self._client.request(method, url, json=json, headers=headers)
        except httpx.HTTPError as exc:
            logger.debug("%s %s failed: %s", method, url, exc)
            raise RemoteRejected(None, f"{type(exc).__name__}: {exc}") from exc
        if not response.is_success:
            raise RemoteRejected(response.status_code, response.reason_phrase)
        return response
