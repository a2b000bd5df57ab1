"""Client for the HTTP fleet inventory.

The endpoint answers ``GET`` with ``{"items": [{"id", "ip", "hostname"}, ...]}``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

import httpx

from .errors import InventoryError
from .log import get_logger

log = get_logger(__name__)

INVENTORY_URL_ENV = "OPSFLEET_INVENTORY_URL"


@dataclass(frozen=True)
class InventoryRecord:
    id: str
    ip: str
    hostname: str = ""

    @property
    def name(self) -> str:
        """Registry name: the hostname, or the record id when it has none."""
        return self.hostname or self.id


def inventory_url_from_env() -> str | None:
    return os.environ.get(INVENTORY_URL_ENV) or None


def parse_inventory(payload: Any) -> list[InventoryRecord]:
    """Validate a decoded inventory document."""
    if not isinstance(payload, dict) or not isinstance(payload.get("items"), list):
        raise InventoryError("inventory response has no 'items' list")

    records = []
    for i, item in enumerate(payload["items"]):
        if not isinstance(item, dict):
            raise InventoryError(f"inventory item {i} is not an object")
        record_id = item.get("id")
        ip = item.get("ip")
        hostname = item.get("hostname") or ""
        if not isinstance(record_id, str) or not record_id:
            raise InventoryError(f"inventory item {i} has no 'id'")
        if not isinstance(ip, str) or not ip:
            raise InventoryError(f"inventory item {record_id!r} has no 'ip'")
        if not isinstance(hostname, str):
            raise InventoryError(f"inventory item {record_id!r} has a non-string 'hostname'")
        records.append(InventoryRecord(id=record_id, ip=ip, hostname=hostname))
    return records


async def fetch_inventory(
    url: str,
    timeout: float = 10.0,
    client: httpx.AsyncClient | None = None,
) -> list[InventoryRecord]:
    """Fetch and decode the inventory. Any failure raises InventoryError."""
    if not url:
        raise InventoryError("inventory URL is not set")

    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=timeout)
    try:
        response = await client.get(url)
    except httpx.HTTPError as e:
        raise InventoryError(f"failed to connect to inventory at {url}: {e}") from e
    finally:
        if owns_client:
            await client.aclose()

    if response.status_code != httpx.codes.OK:
        raise InventoryError(
            f"inventory returned status code {response.status_code}: {response.reason_phrase}"
        )

    try:
        payload = response.json()
    except ValueError as e:
        raise InventoryError(f"failed to decode inventory response: {e}") from e

    records = parse_inventory(payload)
    log.info("inventory.loaded", url=url, machines=len(records))
    return records
