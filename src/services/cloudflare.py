"""DNS provider client (Cloudflare API)."""
import logging
from dataclasses import dataclass

import httpx

from src.core.resilience import resilient

logger = logging.getLogger(__name__)


class DnsProviderError(Exception):
    """The DNS provider reported an unsuccessful operation."""
    pass


@dataclass
class DnsRecord:
    id: str
    name: str
    content: str | None
    proxied: bool = False
    ttl: int = 300


def _ttl(proxied: bool) -> int:
    # Proxied records must use automatic TTL
    return 1 if proxied else 300


class CloudflareDns:
    """Manages A records in one zone."""

    def __init__(
        self,
        api_token: str,
        zone_id: str,
        base_url: str = "https://api.cloudflare.com/client/v4",
        timeout: float = 30.0,
    ):
        self.api_token = api_token
        self.zone_id = zone_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"Authorization": f"Bearer {self.api_token}"},
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def _records_path(self) -> str:
        return f"/zones/{self.zone_id}/dns_records"

    @staticmethod
    def _unwrap(response: httpx.Response, action: str):
        response.raise_for_status()
        data = response.json()
        if not data.get("success"):
            raise DnsProviderError(f"Failed to {action}: {data.get('errors')}")
        return data.get("result")

    @staticmethod
    def _record(data: dict) -> DnsRecord:
        return DnsRecord(
            id=data["id"],
            name=data["name"],
            content=data.get("content"),
            proxied=bool(data.get("proxied", False)),
            ttl=data.get("ttl", 300),
        )

    @resilient("cloudflare")
    async def find_record(self, name: str) -> DnsRecord | None:
        client = await self._get_client()
        response = await client.get(self._records_path, params={"type": "A", "name": name})
        records = self._unwrap(response, f"look up DNS record {name}") or []
        return self._record(records[0]) if records else None

    @resilient("cloudflare")
    async def create_record(self, name: str, ip: str, proxied: bool = False) -> DnsRecord:
        client = await self._get_client()
        logger.info(f"Creating DNS record: {name} -> {ip}")
        response = await client.post(
            self._records_path,
            json={"type": "A", "name": name, "content": ip, "proxied": proxied, "ttl": _ttl(proxied)},
        )
        record = self._record(self._unwrap(response, f"create DNS record {name}"))
        logger.info(f"DNS record created: {record.name} (ID: {record.id})")
        return record

    @resilient("cloudflare")
    async def update_record(
        self, record_id: str, name: str, ip: str, proxied: bool = False
    ) -> DnsRecord:
        client = await self._get_client()
        logger.info(f"Updating DNS record {record_id}: {name} -> {ip}")
        response = await client.put(
            f"{self._records_path}/{record_id}",
            json={"type": "A", "name": name, "content": ip, "proxied": proxied, "ttl": _ttl(proxied)},
        )
        return self._record(self._unwrap(response, f"update DNS record {name}"))

    @resilient("cloudflare")
    async def delete_record(self, record_id: str) -> None:
        """Delete a record. A record that is already gone is not an error."""
        client = await self._get_client()
        logger.info(f"Deleting DNS record: {record_id}")
        response = await client.delete(f"{self._records_path}/{record_id}")
        if response.status_code == 404:
            logger.info(f"DNS record {record_id} already absent")
            return
        self._unwrap(response, f"delete DNS record {record_id}")

    async def create_or_find_record(self, name: str, ip: str, proxied: bool = False) -> DnsRecord:
        """Point name at ip, reusing an existing record when there is one."""
        existing = await self.find_record(name)
        if existing is None:
            return await self.create_record(name, ip, proxied)
        if existing.content == ip and existing.proxied == proxied:
            return existing
        return await self.update_record(existing.id, name, ip, proxied)
