from __future__ import annotations

import logging
from typing import Dict, Optional, Sequence

from src.export.run_log import RunLog, Severity
from src.guard.executor import first_item, item_id
from src.guard.types import EndpointGroup
from src.sut.http_client import ApiClient

logger = logging.getLogger(__name__)


async def discover_resource_ids(
    client: ApiClient,
    groups: Sequence[EndpointGroup],
    token: Optional[str] = None,
    run_log: Optional[RunLog] = None,
) -> Dict[str, str]:
    """
    Fetch each group's collection endpoint and remember the first item's id,
    so tests hit live records instead of the placeholder id.
    Groups whose collection cannot be read are left out.
    """
    run_log = run_log or RunLog()
    found: Dict[str, str] = {}
    for group in groups:
        collection = group.find("GET", templated=False)
        if collection is None:
            continue
        outcome = await client.get(collection.path, token=token)
        if not outcome.ok:
            run_log.emit(Severity.WARN, f"Could not fetch {collection.path} [{outcome.status}]", group.resource)
            continue
        item = first_item(outcome.data)
        resource_id = item_id(item) if item is not None else None
        if resource_id is None and isinstance(item, dict) and item.get("name"):
            resource_id = str(item["name"])
        if resource_id is None:
            run_log.emit(Severity.WARN, f"No usable id in {collection.path}", group.resource)
            continue
        found[group.resource] = resource_id
        run_log.emit(Severity.INFO, f"Discovered id {resource_id}", group.resource)
    return found
