"""
Region scanning.

A region's servers are split into two groups (A/B). Usually only one of them
is serving matches, so both groups are probed side by side and a group that
keeps timing out while its sibling answers is abandoned early.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Sequence

from . import config as const
from .models import Endpoint, GroupStats, ProbeOutcome, RegionResult
from .servers import ServerListError

logger = logging.getLogger(__name__)

ProbeFunc = Callable[[str, int], Awaitable["int | None"]]
UpdateFunc = Callable[[Endpoint, ProbeOutcome], None]
ReachableFunc = Callable[[str], Awaitable[None]]


def resolve_active_group(a_success: int, b_success: int) -> str | None:
    if a_success > 0 and b_success > 0:
        return "A+B"
    if a_success > 0:
        return "A"
    if b_success > 0:
        return "B"
    return None


def partition(endpoints: Iterable[Endpoint]) -> tuple[list[Endpoint], list[Endpoint]]:
    """Split by group tag; anything not tagged B belongs to A"""
    group_a, group_b = [], []
    for ep in endpoints:
        (group_b if ep.group == "B" else group_a).append(ep)
    return group_a, group_b


class GroupProber:
    """Probes one group's endpoints in list order."""

    def __init__(
        self,
        probe: ProbeFunc,
        threshold: int | None = None,
        sibling_successes: int = const.SIBLING_SUCCESS_MIN,
        on_update: UpdateFunc | None = None,
        on_reachable: ReachableFunc | None = None,
    ):
        self.probe = probe
        self.threshold = threshold
        self.sibling_successes = sibling_successes
        self.on_update = on_update
        self.on_reachable = on_reachable

    def should_stop(self, own: GroupStats, other: GroupStats | None) -> bool:
        if self.threshold is None or other is None:
            return False
        return own.timeout_count >= self.threshold and other.success_count >= self.sibling_successes

    def _notify(self, endpoint: Endpoint, outcome: ProbeOutcome) -> None:
        if self.on_update is not None:
            self.on_update(endpoint, outcome)

    async def run(
        self,
        endpoints: Sequence[Endpoint],
        own: GroupStats,
        other: GroupStats | None = None,
        outcomes: dict[int, ProbeOutcome] | None = None,
    ) -> None:
        outcomes = outcomes if outcomes is not None else {}
        for pos, endpoint in enumerate(endpoints):
            if self.should_stop(own, other):
                logger.info(
                    "group %s: %d timeouts while sibling has %d up, skipping %d servers",
                    own.name, own.timeout_count, other.success_count, len(endpoints) - pos,
                )
                for rest in endpoints[pos:]:
                    outcome = outcomes.setdefault(rest.index, ProbeOutcome())
                    outcome.skip()
                    own.record(outcome)
                    self._notify(rest, outcome)
                return

            outcome = outcomes.setdefault(endpoint.index, ProbeOutcome())
            outcome.start()
            self._notify(endpoint, outcome)

            ping = await self.probe(endpoint.ip, endpoint.port)
            outcome.finish(ping)
            own.record(outcome)
            self._notify(endpoint, outcome)

            if ping is not None and self.on_reachable is not None:
                try:
                    await self.on_reachable(endpoint.ip)
                except Exception:
                    logger.exception("geo notification for %s failed", endpoint.ip)


class RegionScanner:
    def __init__(
        self,
        probe: ProbeFunc,
        on_update: Callable[[str, Endpoint, ProbeOutcome], None] | None = None,
        on_reachable: ReachableFunc | None = None,
    ):
        self.probe = probe
        self.on_update = on_update
        self.on_reachable = on_reachable

    def _group_prober(self, region: const.Region, threshold: int | None) -> GroupProber:
        on_update = None
        if self.on_update is not None:
            on_update = lambda ep, outcome: self.on_update(region.id, ep, outcome)  # noqa: E731
        return GroupProber(self.probe, threshold, on_update=on_update, on_reachable=self.on_reachable)

    async def scan_region(self, region: const.Region, endpoints: Sequence[Endpoint]) -> RegionResult:
        """Probe every endpoint of a region and work out its active group"""
        outcomes = {ep.index: ProbeOutcome() for ep in endpoints}
        if not endpoints:
            return RegionResult(region.id, None, outcomes)

        if not region.has_groups:
            stats = GroupStats("A")
            await self._group_prober(region, None).run(endpoints, stats, None, outcomes)
            return RegionResult(region.id, resolve_active_group(stats.success_count, 0), outcomes)

        group_a, group_b = partition(endpoints)
        stats_a, stats_b = GroupStats("A"), GroupStats("B")
        prober = self._group_prober(region, region.timeout_threshold)
        await asyncio.gather(
            prober.run(group_a, stats_a, stats_b, outcomes),
            prober.run(group_b, stats_b, stats_a, outcomes),
        )
        active = resolve_active_group(stats_a.success_count, stats_b.success_count)
        logger.info(
            "%s: A %d up/%d timeout, B %d up/%d timeout -> active %s",
            region.id, stats_a.success_count, stats_a.timeout_count,
            stats_b.success_count, stats_b.timeout_count, active,
        )
        return RegionResult(region.id, active, outcomes)

    async def scan_all(self, regions: Sequence[const.Region], source) -> tuple[dict[str, list[Endpoint]], dict[str, RegionResult]]:
        """
        Fetch every region's server list, then scan all regions concurrently.

        A region whose list cannot be fetched gets a result with ``error`` set;
        the other regions are unaffected.
        """
        async def fetch(region):
            try:
                return await source.fetch_endpoints(region.id)
            except ServerListError as e:
                logger.warning("server list for %s unavailable: %s", region.id, e)
                return e

        fetched = await asyncio.gather(*(fetch(r) for r in regions))
        endpoints: dict[str, list[Endpoint]] = {}
        results: dict[str, RegionResult] = {}
        scans = []
        for region, value in zip(regions, fetched):
            if isinstance(value, ServerListError):
                endpoints[region.id] = []
                results[region.id] = RegionResult(region.id, error=str(value))
            else:
                endpoints[region.id] = value
                scans.append(region)

        done = await asyncio.gather(*(self.scan_region(r, endpoints[r.id]) for r in scans))
        for result in done:
            results[result.region] = result
        return endpoints, {r.id: results[r.id] for r in regions}
