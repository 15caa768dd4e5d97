from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

MANAGEMENT_SCOPE = "https://management.azure.com/.default"
COMPUTE_API_VERSION = "2023-09-01"


class VMStartError(RuntimeError):
    pass


@dataclass
class AzureVMConfig:
    tenant_id: str
    client_id: str
    client_secret: str
    subscription_id: str
    resource_group: str
    vm_name: str

    @classmethod
    def from_env(cls) -> "AzureVMConfig":
        names = {
            "tenant_id": "AZURE_TENANT_ID",
            "client_id": "AZURE_CLIENT_ID",
            "client_secret": "AZURE_CLIENT_SECRET",
            "subscription_id": "AZURE_SUBSCRIPTION_ID",
            "resource_group": "AZURE_RESOURCE_GROUP",
            "vm_name": "AZURE_VM_NAME",
        }
        values = {field: os.getenv(env, "").strip() for field, env in names.items()}
        missing = [names[f] for f, v in values.items() if not v]
        if missing:
            raise ValueError(f"Azure VM start needs env: {', '.join(missing)}")
        return cls(**values)


class AzureVMStarter:
    """Starts an Azure VM through the management REST API (client-credentials grant)."""

    def __init__(self, config: AzureVMConfig, client: Optional[httpx.AsyncClient] = None) -> None:
        self.config = config
        self.client = client or httpx.AsyncClient(timeout=30.0)
        self._management_token: Optional[str] = None

    @property
    def start_url(self) -> str:
        c = self.config
        return (
            f"https://management.azure.com/subscriptions/{c.subscription_id}/"
            f"resourceGroups/{c.resource_group}/providers/Microsoft.Compute/"
            f"virtualMachines/{c.vm_name}/start?api-version={COMPUTE_API_VERSION}"
        )

    async def _token(self) -> str:
        if self._management_token:
            return self._management_token
        url = f"https://login.microsoftonline.com/{self.config.tenant_id}/oauth2/v2.0/token"
        response = await self.client.post(url, data={
            "grant_type": "client_credentials",
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "scope": MANAGEMENT_SCOPE,
        })
        if not response.is_success:
            detail = response.text
            try:
                body = response.json()
                detail = body.get("error_description") or body.get("error") or detail
            except ValueError:
                pass
            raise VMStartError(f"Azure authentication failed: {detail}")
        self._management_token = response.json()["access_token"]
        return self._management_token

    async def start(self) -> None:
        token = await self._token()
        logger.info("Starting VM %s", self.config.vm_name)
        response = await self.client.post(
            self.start_url,
            json={},
            headers={"Authorization": f"Bearer {token}"},
        )
        if response.status_code == 409:
            logger.info("VM %s is already running or starting", self.config.vm_name)
            return
        if response.status_code not in (200, 202):
            raise VMStartError(f"Failed to start VM: HTTP {response.status_code}")
        logger.info("VM start command accepted")
