"""
Endpoint latency measurement.

Each probe runs a few sequential timing trials against ip:port and keeps
the median of the plausible samples. Two trial methods exist:

- tcp: time until the TCP handshake completes
- http: time until the first definitive answer to an HTTPS request
  (a response, or a connection/protocol error that is not a timeout)
"""

from __future__ import annotations

import asyncio
import logging
import math
import ssl
import statistics
import time

import httpx

from . import config as const
from .models import ProbeResult

logger = logging.getLogger(__name__)


def reduce_samples(
    samples: list[float | None],
    min_valid_ms: float = const.MIN_VALID_PING_MS,
    max_valid_ms: float = const.MAX_VALID_PING_MS,
) -> int | None:
    """Median of the samples inside (min_valid_ms, max_valid_ms), rounded, floored at 1ms"""
    valid = [s for s in samples if s is not None and math.isfinite(s) and min_valid_ms < s < max_valid_ms]
    if not valid:
        return None
    # Upper median for even counts
    median = statistics.median_high(valid)
    return max(1, math.floor(median + 0.5))


class EndpointProber:
    """Measures one endpoint with ``attempts`` sequential trials."""

    def __init__(
        self,
        attempts: int = const.PROBE_ATTEMPTS,
        timeout_ms: int = const.PROBE_TIMEOUT_MS,
        interval_ms: int = const.PROBE_INTERVAL_MS,
        min_valid_ms: float = const.MIN_VALID_PING_MS,
        max_valid_ms: float = const.MAX_VALID_PING_MS,
        method: str = "tcp",
    ):
        if method not in const.PROBE_METHODS:
            raise ValueError(f"unknown probe method: {method}")
        self.attempts = max(1, attempts)
        self.timeout_ms = timeout_ms
        self.interval_ms = interval_ms
        self.min_valid_ms = min_valid_ms
        self.max_valid_ms = max_valid_ms
        self.method = method

    @classmethod
    def from_settings(cls, settings: const.ProbeSettings) -> "EndpointProber":
        return cls(
            attempts=settings.attempts,
            timeout_ms=settings.timeout_ms,
            interval_ms=settings.interval_ms,
            max_valid_ms=min(const.MAX_VALID_PING_MS, settings.timeout_ms),
            method=settings.method,
        )

    async def sample_once(self, ip: str, port: int) -> float | None:
        if self.method == "http":
            return await self._sample_http(ip, port)
        return await self._sample_tcp(ip, port)

    async def _sample_tcp(self, ip: str, port: int) -> float | None:
        timeout = self.timeout_ms / 1000
        started = time.perf_counter()
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(ip, port), timeout)
        except (asyncio.TimeoutError, OSError) as e:
            logger.debug("tcp %s:%s failed: %r", ip, port, e)
            return None
        elapsed = (time.perf_counter() - started) * 1000
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return elapsed if elapsed > 0 else None

    async def _sample_http(self, ip: str, port: int) -> float | None:
        timeout = self.timeout_ms / 1000
        url = f"https://{ip}:{port}/?_={time.time_ns()}"
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        started = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=timeout, verify=ctx, headers={"Cache-Control": "no-store"}) as client:
                await client.get(url)
        except httpx.TimeoutException:
            return None
        except httpx.HTTPError as e:
            # An error answer still bounds the round trip unless it is really an abort
            logger.debug("http %s:%s answered with %r", ip, port, e)
        elapsed = (time.perf_counter() - started) * 1000
        if elapsed >= self.timeout_ms - const.ABORT_SLACK_MS:
            return None
        return elapsed

    async def measure(self, ip: str, port: int) -> ProbeResult:
        """Run all trials and reduce them to a single ping"""
        samples = []
        for i in range(self.attempts):
            sample = await self.sample_once(ip, port)
            if sample is not None and self.min_valid_ms < sample < self.max_valid_ms:
                samples.append(sample)
            if i < self.attempts - 1:
                await asyncio.sleep(self.interval_ms / 1000)

        ping = reduce_samples(samples, self.min_valid_ms, self.max_valid_ms)
        logger.debug("probe %s:%s -> %s (%d/%d samples)", ip, port, ping, len(samples), self.attempts)
        return ProbeResult(ping=ping, samples=sorted(round(s, 2) for s in samples))

    async def __call__(self, ip: str, port: int) -> int | None:
        return (await self.measure(ip, port)).ping
