"""Server list retrieval and parsing."""

from __future__ import annotations

import logging
import re
import time

import httpx

from . import config as const
from .models import Endpoint

logger = logging.getLogger(__name__)

DOTTED_QUAD = re.compile(r"\d{1,3}(\.\d{1,3}){3}", re.ASCII)


class ServerListError(Exception):
    """The server list for a region could not be fetched."""


class UnknownRegion(KeyError):
    pass


def parse_server_list(text: str) -> list[Endpoint]:
    """
    Parse a plaintext server list.

    Format: ``ID TYPE IP PORT VAL1 VAL2 NUM1 NUM2 [GROUP]``, e.g.
    ``10001 5 34.84.21.129 4000 12 10 2614959 2634973  A``. Test server
    lists have no group column.
    """
    low, high = const.SERVER_PORT_RANGE
    endpoints = []
    for line in text.split("\n"):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split()
        if len(parts) < 4:
            continue

        ip = parts[2]
        if not DOTTED_QUAD.fullmatch(ip):
            continue
        try:
            port = int(parts[3])
        except ValueError:
            continue
        if port < low or port > high:
            continue

        group = parts[8] if len(parts) >= 9 else None
        endpoints.append(Endpoint(server_id=parts[0], ip=ip, port=port, group=group, index=len(endpoints)))
    return endpoints


class ServerListSource:
    """Fetches region server lists, keeping each parsed list for ``ttl`` seconds."""

    def __init__(
        self,
        regions: dict[str, const.Region] | None = None,
        client: httpx.AsyncClient | None = None,
        ttl: float = const.SERVER_LIST_TTL,
    ):
        self.regions = regions if regions is not None else dict(const.REGIONS)
        self.client = client
        self.ttl = ttl
        self._cache: dict[str, tuple[float, list[Endpoint]]] = {}

    async def _get(self, url: str) -> str:
        if self.client is not None:
            resp = await self.client.get(url)
            resp.raise_for_status()
            return resp.text
        async with httpx.AsyncClient(
            timeout=const.SERVER_LIST_TIMEOUT,
            follow_redirects=True,
            headers={"User-Agent": const.USER_AGENT},
        ) as client:
            resp = await client.get(url)
            resp.raise_for_status()
            return resp.text

    async def fetch_endpoints(self, region_id: str) -> list[Endpoint]:
        region = self.regions.get(region_id)
        if region is None:
            raise UnknownRegion(region_id)

        cached = self._cache.get(region_id)
        if cached and time.monotonic() - cached[0] < self.ttl:
            return cached[1]

        try:
            text = await self._get(region.url)
        except httpx.HTTPError as e:
            raise ServerListError(f"{region_id}: {e}") from e

        endpoints = parse_server_list(text)
        logger.info("%s: %d servers listed", region_id, len(endpoints))
        self._cache[region_id] = (time.monotonic(), endpoints)
        return endpoints
