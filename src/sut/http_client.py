from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


@dataclass
class HttpOutcome:
    method: str
    url: str
    status: int              # 0 when the request never got a response
    data: Any = None
    error: Optional[str] = None
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None and 200 <= self.status < 300


def _extract_error(response: httpx.Response, data: Any) -> str:
    if isinstance(data, dict):
        for key in ("message", "detail", "error_description", "error"):
            if data.get(key):
                return str(data[key])
    return f"HTTP {response.status_code} {response.reason_phrase}".strip()


def _decode(response: httpx.Response) -> Any:
    if response.status_code == 204 or not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class ApiClient:
    """
    Thin adapter over httpx.AsyncClient.

    Never raises for HTTP status codes; transport failures and timeouts come back
    as status 0 with the error text, so callers only ever inspect an HttpOutcome.
    """

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        verify_tls: bool = True,
        default_headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout, verify=verify_tls, follow_redirects=True)
        self.timeout = timeout
        self.default_headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            **(default_headers or {}),
        }

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    def url_for(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def request(
        self,
        method: str,
        path: str,
        token: Optional[str] = None,
        json: Any = None,
        timeout: Optional[float] = None,
    ) -> HttpOutcome:
        url = self.url_for(path)
        headers = dict(self.default_headers)
        if token:
            headers["Authorization"] = f"Bearer {token}"

        kwargs: Dict[str, Any] = {"headers": headers, "timeout": timeout or self.timeout}
        if json is not None:
            kwargs["json"] = json

        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.debug("%s %s timed out: %s", method, url, e)
            return HttpOutcome(method=method, url=url, status=0, error=f"timeout: {e}")
        except httpx.HTTPError as e:
            logger.debug("%s %s failed: %s", method, url, e)
            return HttpOutcome(method=method, url=url, status=0, error=str(e) or e.__class__.__name__)

        data = _decode(response)
        elapsed = response.elapsed.total_seconds() * 1000 if _has_elapsed(response) else 0.0
        outcome = HttpOutcome(method=method, url=url, status=response.status_code, data=data, elapsed_ms=elapsed)
        if not response.is_success:
            outcome.error = _extract_error(response, data)
        return outcome

    async def get(self, path: str, token: Optional[str] = None) -> HttpOutcome:
        return await self.request("GET", path, token=token)


def _has_elapsed(response: httpx.Response) -> bool:
    # .elapsed is only set once the response stream is closed
    try:
        response.elapsed
    except RuntimeError:
        return False
    return True
