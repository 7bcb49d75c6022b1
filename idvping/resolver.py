"""
Multi-provider geo resolution.

Uncached IPs are routed to a primary provider by their last octet so each
upstream only sees a fixed share of the traffic (and of its rate limit).
Whatever the primary route leaves blank is filled in by a second pass over
the remaining providers.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Sequence

from . import config as const
from .cache import GeoCache
from .models import EMPTY_GEO, GeoRecord, merge
from .providers import GeoProvider

logger = logging.getLogger(__name__)

BUCKET_DIVISOR = 6
# last octet % 6 -> routed provider index: 3/6, 1/6, 2/6 of the traffic
BUCKETS = (0, 0, 0, 1, 2, 2)


def bucket_for(ip: str, n_providers: int = 3) -> int:
    """Index of the primary provider for ``ip``; depends only on the last octet"""
    if n_providers <= 1:
        return 0
    try:
        octet = int(ip.rsplit(".", 1)[-1])
    except ValueError:
        return 0
    return min(BUCKETS[octet % BUCKET_DIVISOR], n_providers - 1)


class GeoResolver:
    def __init__(
        self,
        providers: Sequence[GeoProvider],
        cache: GeoCache,
        extra_providers: Sequence[GeoProvider] = (),
    ):
        if not providers and not extra_providers:
            raise ValueError("at least one geo provider is required")
        self.providers = list(providers)
        self.extra_providers = list(extra_providers)
        self.cache = cache

    @property
    def all_providers(self) -> list[GeoProvider]:
        return self.providers + self.extra_providers

    def route(self, ips: Iterable[str]) -> dict[int, list[str]]:
        routes: dict[int, list[str]] = {}
        for ip in ips:
            routes.setdefault(bucket_for(ip, len(self.providers)), []).append(ip)
        return routes

    async def _fan_out(self, jobs: dict[int, list[str]], providers: Sequence[GeoProvider]) -> dict[int, dict[str, GeoRecord]]:
        """Run every provider's sublist concurrently; keyed by provider index"""
        order = [i for i, ips in jobs.items() if ips]
        answers = await asyncio.gather(*(providers[i].lookup_many(jobs[i]) for i in order))
        return dict(zip(order, answers))

    async def resolve(self, ips: Iterable[str]) -> dict[str, GeoRecord]:
        ips = list(dict.fromkeys(ips))
        hits, uncached = self.cache.split(ips)
        if not uncached:
            return {ip: hits[ip] for ip in ips}

        providers = self.all_providers
        primary: dict[str, int] = {}
        if self.providers:
            routes = self.route(uncached)
            for index, routed in routes.items():
                for ip in routed:
                    primary[ip] = index
            first = await self._fan_out(routes, providers)
        else:
            first = {}

        # Primary answer goes on top so it wins over anything else that saw the IP
        merged: dict[str, GeoRecord] = {}
        for ip in uncached:
            record = EMPTY_GEO
            for index, answers in first.items():
                if index != primary.get(ip) and ip in answers:
                    record = merge(record, answers[ip])
            if ip in primary:
                record = merge(record, first.get(primary[ip], {}).get(ip, EMPTY_GEO))
            merged[ip] = record

        # Enrichment: ask every other provider about IPs still missing country or org
        pending = [ip for ip in uncached if not merged[ip].complete]
        if pending:
            jobs = {
                index: [ip for ip in pending if primary.get(ip) != index]
                for index in range(len(providers))
            }
            second = await self._fan_out(jobs, providers)
            for index in sorted(second):
                for ip, record in second[index].items():
                    if ip in merged:
                        merged[ip] = merge(merged[ip], record)
            if second:
                logger.debug("enrichment pass over %d IPs", len(pending))

        stored = 0
        for ip in uncached:
            stored += self.cache.put(ip, merged[ip])
        logger.info("geo: %d cached, %d looked up, %d resolved", len(hits), len(uncached), stored)

        return {ip: hits.get(ip) or merged.get(ip, EMPTY_GEO) for ip in ips}


ResultFunc = Callable[[str, GeoRecord], None]


class GeoQueue:
    """
    Bounded channel between the scanner and the resolver.

    IPs are collected until no new one arrives for ``debounce`` seconds, then
    resolved together in batches of at most ``batch_size``.
    """

    def __init__(
        self,
        resolver: GeoResolver,
        on_result: ResultFunc | None = None,
        debounce: float = const.GEO_DEBOUNCE,
        maxsize: int = const.GEO_QUEUE_SIZE,
        batch_size: int = const.GEO_BATCH_LIMIT,
    ):
        self.resolver = resolver
        self.on_result = on_result
        self.debounce = debounce
        self.batch_size = batch_size
        self.results: dict[str, GeoRecord] = {}
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize)
        self._task: asyncio.Task | None = None

    def _emit(self, ip: str, record: GeoRecord) -> None:
        self.results[ip] = record
        if self.on_result is not None:
            self.on_result(ip, record)

    async def enqueue(self, ip: str) -> None:
        cached = self.resolver.cache.get(ip)
        if cached is not None:
            self._emit(ip, cached)
            return
        await self._queue.put(ip)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def close(self) -> None:
        """Flush whatever is pending and stop the consumer"""
        if self._task is None:
            return
        await self._queue.put(None)
        await self._task
        self._task = None

    async def _flush(self, pending: list[str]) -> None:
        for start in range(0, len(pending), self.batch_size):
            chunk = pending[start:start + self.batch_size]
            try:
                found = await self.resolver.resolve(chunk)
            except Exception:
                logger.exception("geo batch of %d failed", len(chunk))
                found = {}
            for ip in chunk:
                self._emit(ip, found.get(ip, EMPTY_GEO))

    async def _run(self) -> None:
        closing = False
        while not closing:
            ip = await self._queue.get()
            if ip is None:
                break
            pending = [ip]
            while True:
                try:
                    ip = await asyncio.wait_for(self._queue.get(), self.debounce)
                except asyncio.TimeoutError:
                    break
                if ip is None:
                    closing = True
                    break
                if ip not in pending:
                    pending.append(ip)
            await self._flush(pending)
