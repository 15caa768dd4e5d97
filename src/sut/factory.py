from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import httpx
import yaml

from src.guard.types import EndpointDescriptor, EndpointGroup

HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")
_METHOD_ORDER = {"GET": 1, "POST": 2, "PUT": 3, "PATCH": 4, "DELETE": 5}


@dataclass
class Catalog:
    base_url: str
    groups: List[EndpointGroup]
    source: str

    @property
    def endpoint_count(self) -> int:
        return sum(len(g.endpoints) for g in self.groups)


def resource_of(path: str) -> str:
    # /api/users/{id} -> /api/users, /pet/findByStatus -> /pet
    parts = [p for p in path.split("/") if p]
    if not parts:
        return "/root"
    first = parts[0].lower()
    if (first == "api" or (first.startswith("v") and first[1:].replace(".", "").isdigit())) and len(parts) > 1:
        return "/" + "/".join(parts[:2])
    return "/" + parts[0]


def _response_schema(details: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    for code in ("200", "201", 200, 201):
        response = (details.get("responses") or {}).get(code)
        if not isinstance(response, dict):
            continue
        if "schema" in response:                                   # Swagger 2
            return response["schema"]
        content = response.get("content") or {}                    # OpenAPI 3
        media = content.get("application/json") or next(iter(content.values()), None)
        if isinstance(media, dict):
            return media.get("schema")
    return None


def _request_schema(details: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    body = details.get("requestBody")
    if isinstance(body, dict):
        content = body.get("content") or {}
        media = content.get("application/json") or next(iter(content.values()), None)
        if isinstance(media, dict):
            return media.get("schema")
    for param in details.get("parameters") or ():
        if isinstance(param, dict) and param.get("in") == "body":
            return param.get("schema")
    return None


def derive_base_url(openapi: Dict[str, Any], source: str) -> str:
    parsed = urlparse(source) if source.startswith(("http://", "https://")) else None
    origin = f"{parsed.scheme}://{parsed.netloc}" if parsed else ""

    servers = openapi.get("servers") or []
    if servers and isinstance(servers[0], dict) and servers[0].get("url"):
        url = servers[0]["url"]
        if url.startswith("/"):
            url = origin + url
        elif not url.startswith(("http://", "https://")) and parsed:
            url = origin + parsed.path.rsplit("/", 1)[0] + "/" + url
        return url.rstrip("/")
    if openapi.get("host"):
        scheme = (openapi.get("schemes") or ["https"])[0]
        return f"{scheme}://{openapi['host']}{openapi.get('basePath', '')}".rstrip("/")
    return origin


def parse_catalog(openapi: Dict[str, Any], source: str = "") -> Catalog:
    """Swagger 2 / OpenAPI 3 document -> endpoint groups keyed by resource."""
    grouped: Dict[str, List[EndpointDescriptor]] = {}
    for path, methods in (openapi.get("paths") or {}).items():
        if not isinstance(methods, dict):
            continue
        shared_params = tuple(methods.get("parameters") or ())
        for method, details in methods.items():
            if method.upper() not in HTTP_METHODS or not isinstance(details, dict):
                continue
            resource = resource_of(path)
            grouped.setdefault(resource, []).append(EndpointDescriptor(
                path=path,
                method=method.upper(),
                operation_id=details.get("operationId"),
                resource=resource,
                summary=details.get("summary") or details.get("description"),
                parameters=shared_params + tuple(details.get("parameters") or ()),
                request_schema=_request_schema(details),
                response_schema=_response_schema(details),
            ))

    groups = [
        EndpointGroup(
            resource=resource,
            endpoints=tuple(sorted(endpoints, key=lambda e: _METHOD_ORDER.get(e.method, 99))),
        )
        for resource, endpoints in sorted(grouped.items())
    ]
    return Catalog(base_url=derive_base_url(openapi, source), groups=groups, source=source)


class SUTFactory:
    """Loads the OpenAPI document of the system under test (file path or URL)."""

    def __init__(self, client: Optional[httpx.Client] = None, timeout: float = 30.0, verify_tls: bool = True) -> None:
        self.client = client
        self.timeout = timeout
        self.verify_tls = verify_tls

    def load_document(self, source: str) -> Dict[str, Any]:
        if source.startswith(("http://", "https://")):
            client = self.client or httpx.Client(timeout=self.timeout, verify=self.verify_tls)
            try:
                response = client.get(source)
                response.raise_for_status()
                text = response.text
            finally:
                if self.client is None:
                    client.close()
        else:
            p = Path(source)
            if not p.exists():
                raise FileNotFoundError(f"OpenAPI document not found: {p}")
            text = p.read_text(encoding="utf-8")

        # YAML is a superset of JSON, so one loader covers both
        document = yaml.safe_load(text) or {}
        if not isinstance(document, dict) or "paths" not in document:
            raise ValueError(f"{source} does not look like an OpenAPI/Swagger document")
        return document

    def build(self, source: str, base_url: Optional[str] = None) -> Catalog:
        catalog = parse_catalog(self.load_document(source), source)
        if base_url:
            catalog.base_url = base_url.rstrip("/")
        if not catalog.base_url:
            raise ValueError(f"Cannot derive a base URL from {source}; set base_url explicitly")
        return catalog

