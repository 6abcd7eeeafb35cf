"""Virtual machine provider client (Hetzner Cloud API)."""
import logging
from dataclasses import dataclass, field

import httpx

from src.core.resilience import resilient

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """The provider answered with something unusable."""
    pass


@dataclass
class Machine:
    """A virtual machine as reported by the provider."""
    id: str
    name: str
    status: str
    public_ip: str | None = None
    private_ip: str | None = None
    labels: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: dict) -> "Machine":
        public_net = data.get("public_net") or {}
        ipv4 = public_net.get("ipv4") or {}
        private_nets = data.get("private_net") or []
        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            status=data.get("status", "unknown"),
            public_ip=ipv4.get("ip"),
            private_ip=private_nets[0].get("ip") if private_nets else None,
            labels=data.get("labels") or {},
        )


def label_selector(labels: dict[str, str]) -> str:
    """Render a label dict as a provider label selector (k=v,k2=v2)."""
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


class HetznerProvider:
    """Creates, lists and deletes machines."""

    def __init__(
        self,
        api_token: str,
        base_url: str = "https://api.hetzner.cloud/v1",
        timeout: float = 30.0,
    ):
        self.api_token = api_token
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

    @resilient("hetzner")
    async def create_machine(
        self,
        name: str,
        server_type: str,
        image: str,
        location: str,
        ssh_keys: list[str],
        labels: dict[str, str],
        user_data: str | None = None,
    ) -> Machine:
        """Create a machine and return it with its addresses."""
        client = await self._get_client()
        logger.info(f"Creating server {name} ({server_type} in {location})")

        body = {
            "name": name,
            "server_type": server_type,
            "image": image,
            "location": location,
            "ssh_keys": ssh_keys,
            "labels": labels,
            "start_after_create": True,
        }
        if user_data:
            body["user_data"] = user_data

        response = await client.post("/servers", json=body)
        response.raise_for_status()
        server = response.json().get("server")
        if not server:
            raise ProviderError(f"Create server {name} returned no server object")

        machine = Machine.from_api(server)
        logger.info(f"Server created: {machine.name} (ID: {machine.id}, IP: {machine.public_ip})")
        return machine

    @resilient("hetzner")
    async def delete_machine(self, machine_id: str) -> None:
        """Delete a machine. Deleting an already absent machine succeeds."""
        client = await self._get_client()
        logger.info(f"Deleting server {machine_id}")
        response = await client.delete(f"/servers/{machine_id}")
        if response.status_code == 404:
            logger.info(f"Server {machine_id} already gone")
            return
        response.raise_for_status()

    @resilient("hetzner")
    async def get_machine(self, machine_id: str) -> Machine | None:
        client = await self._get_client()
        response = await client.get(f"/servers/{machine_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return Machine.from_api(response.json()["server"])

    @resilient("hetzner")
    async def list_machines_by_label(self, labels: dict[str, str]) -> list[Machine]:
        """List machines carrying all the given labels (follows pagination)."""
        client = await self._get_client()
        machines: list[Machine] = []
        page = 1
        while True:
            response = await client.get(
                "/servers",
                params={"label_selector": label_selector(labels), "page": page, "per_page": 50},
            )
            response.raise_for_status()
            data = response.json()
            machines.extend(Machine.from_api(s) for s in data.get("servers", []))
            next_page = (data.get("meta") or {}).get("pagination", {}).get("next_page")
            if not next_page:
                return machines
            page = next_page

    @resilient("hetzner")
    async def get_machine_type_availability(self, server_type: str) -> set[str]:
        """Locations in which server_type can currently be created."""
        client = await self._get_client()

        response = await client.get("/server_types", params={"name": server_type})
        response.raise_for_status()
        types = response.json().get("server_types", [])
        if not types:
            return set()
        type_id = types[0]["id"]

        response = await client.get("/datacenters")
        response.raise_for_status()
        locations = set()
        for dc in response.json().get("datacenters", []):
            available = (dc.get("server_types") or {}).get("available", [])
            if type_id in available:
                locations.add(dc["location"]["name"])
        return locations

    @resilient("hetzner")
    async def list_locations(self) -> list[dict]:
        client = await self._get_client()
        response = await client.get("/locations")
        response.raise_for_status()
        return [
            {
                "name": loc["name"],
                "city": loc.get("city"),
                "country": loc.get("country"),
                "network_zone": loc.get("network_zone"),
            }
            for loc in response.json().get("locations", [])
        ]
