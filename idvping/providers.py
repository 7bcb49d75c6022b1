"""
Geolocation provider adapters.

Every adapter maps its upstream's response onto a GeoRecord. Lookups never
raise on upstream trouble: timeouts, bad status codes and malformed payloads
all come back as the empty record so the resolver can carry on with the
other providers.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Iterable

import httpx
import maxminddb

from . import config as const
from .models import EMPTY_GEO, GeoRecord

logger = logging.getLogger(__name__)


class GeoProvider:
    """Base adapter: one GET per IP, fanned out over a fixed worker pool."""

    name = "base"
    url = ""

    def __init__(
        self,
        client: httpx.AsyncClient,
        workers: int = const.GEO_WORKERS,
        timeout: float = const.GEO_TIMEOUT,
    ):
        self.client = client
        self.workers = max(1, workers)
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"

    def normalize(self, data: Any) -> GeoRecord:
        raise NotImplementedError

    async def lookup_one(self, ip: str) -> GeoRecord:
        try:
            resp = await self.client.get(self.url.format(ip=ip), timeout=self.timeout)
            if resp.status_code != 200:
                logger.debug("%s: %s -> HTTP %s", self.name, ip, resp.status_code)
                return EMPTY_GEO
            return self.normalize(resp.json())
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            logger.debug("%s: %s failed: %r", self.name, ip, e)
            return EMPTY_GEO

    async def lookup_many(self, ips: Iterable[str]) -> dict[str, GeoRecord]:
        queue: asyncio.Queue[str] = asyncio.Queue()
        for ip in dict.fromkeys(ips):
            queue.put_nowait(ip)
        results: dict[str, GeoRecord] = {}

        async def worker():
            while True:
                try:
                    ip = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                results[ip] = await self.lookup_one(ip)

        count = min(self.workers, queue.qsize())
        if count:
            await asyncio.gather(*(worker() for _ in range(count)))
        return results


class IpApiProvider(GeoProvider):
    """ip-api.com; also supports its multi-IP batch endpoint."""

    name = "ip-api"
    url = "http://ip-api.com/json/{ip}?fields=status,country,countryCode,org,isp,query"
    batch_url = "http://ip-api.com/batch"
    fields = "status,country,countryCode,org,isp,query"

    def normalize(self, data: Any) -> GeoRecord:
        if not isinstance(data, dict) or data.get("status") != "success":
            return EMPTY_GEO
        return GeoRecord(
            country_code=data.get("countryCode") or "",
            country=data.get("country") or "",
            org=data.get("org") or data.get("isp") or "",
        )

    async def lookup_batch(self, ips: Iterable[str]) -> dict[str, GeoRecord]:
        """
        Resolve many IPs with batch requests of up to 100 entries.

        Returns whatever the upstream answered, keyed by the queried value;
        a failed request contributes nothing rather than empty records.
        """
        ips = list(dict.fromkeys(ips))
        results: dict[str, GeoRecord] = {}
        for start in range(0, len(ips), const.GEO_BATCH_LIMIT):
            chunk = ips[start:start + const.GEO_BATCH_LIMIT]
            try:
                resp = await self.client.post(
                    self.batch_url,
                    json=[{"query": ip, "fields": self.fields} for ip in chunk],
                    timeout=self.timeout,
                )
                resp.raise_for_status()
                items = resp.json()
            except (httpx.HTTPError, ValueError) as e:
                logger.warning("%s: batch of %d failed: %r", self.name, len(chunk), e)
                continue
            if not isinstance(items, list):
                continue
            for item in items:
                if isinstance(item, dict) and item.get("query"):
                    results[item["query"]] = self.normalize(item)
        return results

    async def lookup_many(self, ips: Iterable[str]) -> dict[str, GeoRecord]:
        ips = list(dict.fromkeys(ips))
        found = await self.lookup_batch(ips)
        return {ip: found.get(ip, EMPTY_GEO) for ip in ips}


class IpWhoIsProvider(GeoProvider):
    name = "ipwhois"
    url = "https://ipwho.is/{ip}"

    def normalize(self, data: Any) -> GeoRecord:
        if not isinstance(data, dict) or data.get("success") is not True:
            return EMPTY_GEO
        connection = data.get("connection") or {}
        if not isinstance(connection, dict):
            connection = {}
        return GeoRecord(
            country_code=data.get("country_code") or "",
            country=data.get("country") or "",
            org=connection.get("org") or connection.get("isp") or "",
        )


class IpApiCoProvider(GeoProvider):
    name = "ipapi"
    url = "https://ipapi.co/{ip}/json/"

    def normalize(self, data: Any) -> GeoRecord:
        if not isinstance(data, dict) or data.get("error"):
            return EMPTY_GEO
        return GeoRecord(
            country_code=data.get("country_code") or "",
            country=data.get("country_name") or "",
            org=data.get("org") or "",
        )


class MaxMindProvider(GeoProvider):
    """Offline lookups against a local MaxMind (country or ASN) database."""

    name = "mmdb"

    def __init__(self, path: Path, workers: int = const.GEO_WORKERS):
        super().__init__(client=None, workers=workers)
        self.path = Path(path)
        self._reader = None

    def _get_reader(self):
        if self._reader is None:
            self._reader = maxminddb.open_database(str(self.path))
        return self._reader

    def normalize(self, data: Any) -> GeoRecord:
        if not isinstance(data, dict):
            return EMPTY_GEO
        country = data.get("country") or data.get("registered_country") or {}
        names = country.get("names") or {}
        return GeoRecord(
            country_code=country.get("iso_code") or "",
            country=names.get("en") or "",
            org=data.get("autonomous_system_organization") or "",
        )

    async def lookup_one(self, ip: str) -> GeoRecord:
        try:
            return self.normalize(self._get_reader().get(ip))
        except (OSError, ValueError, maxminddb.InvalidDatabaseError) as e:
            logger.debug("%s: %s failed: %r", self.name, ip, e)
            return EMPTY_GEO

    def close(self) -> None:
        if self._reader is not None:
            self._reader.close()
            self._reader = None


PROVIDERS = {
    IpApiProvider.name: IpApiProvider,
    IpWhoIsProvider.name: IpWhoIsProvider,
    IpApiCoProvider.name: IpApiCoProvider,
}


def build_providers(client: httpx.AsyncClient, settings: const.GeoSettings) -> tuple[list[GeoProvider], list[GeoProvider]]:
    """Return (routed providers in bucket order, enrichment-only providers)"""
    routed = []
    for name in settings.providers:
        cls = PROVIDERS.get(name)
        if cls is None:
            raise ValueError(f"unknown geo provider: {name}")
        routed.append(cls(client, workers=settings.workers, timeout=settings.timeout))
    extra = []
    if settings.mmdb is not None and settings.mmdb.exists():
        extra.append(MaxMindProvider(settings.mmdb, workers=settings.workers))
    return routed, extra
