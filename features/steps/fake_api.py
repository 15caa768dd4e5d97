"""
In-memory stand-in for the API under test, built on httpx.MockTransport.

Routes are keyed by (METHOD, path). Each route holds a queue of canned
responses; the last one repeats once the others are used up. Status 0
simulates a refused connection.
"""
import asyncio
import json
from typing import Any, Dict, List, Optional, Tuple

import httpx

from src.sut.http_client import ApiClient

BASE_URL = "http://api.test"


class FakeApi:
    def __init__(self, delay: float = 0.0) -> None:
        self.routes: Dict[Tuple[str, str], List[Tuple[int, Any]]] = {}
        self.calls: List[Tuple[str, str, Any]] = []
        self.headers: List[Optional[str]] = []   # Authorization header per call
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0

    def add(self, method: str, path: str, status: int = 200, body: Any = None) -> "FakeApi":
        self.routes.setdefault((method.upper(), path), []).append((status, body))
        return self

    def _next(self, key: Tuple[str, str]) -> Optional[Tuple[int, Any]]:
        queue = self.routes.get(key)
        if not queue:
            return None
        return queue.pop(0) if len(queue) > 1 else queue[0]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        body = None
        if request.content:
            try:
                body = json.loads(request.content)
            except ValueError:
                body = request.content.decode()
        self.calls.append((request.method, request.url.path, body))
        self.headers.append(request.headers.get("authorization"))

        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1

        canned = self._next((request.method, request.url.path))
        if canned is None:
            return httpx.Response(404, json={"message": f"no route for {request.method} {request.url.path}"})
        status, payload = canned
        if status == 0:
            raise httpx.ConnectError("connection refused", request=request)
        if callable(payload):
            payload = payload(request, body)
        if payload is None:
            return httpx.Response(status)
        return httpx.Response(status, json=payload)

    def http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def api_client(self) -> ApiClient:
        return ApiClient(BASE_URL, client=self.http())

    def count(self, method: Optional[str] = None, path: Optional[str] = None) -> int:
        return sum(
            1 for m, p, _ in self.calls
            if (method is None or m == method.upper()) and (path is None or p == path)
        )

    def body_of(self, method: str, path: str) -> Any:
        for m, p, body in self.calls:
            if m == method.upper() and p == path:
                return body
        return None


def echo(request: httpx.Request, body: Any) -> Any:
    return body


class VirtualClock:
    """Clock + sleep pair for the readiness poller; sleeping only advances time."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)   # let background tasks run

