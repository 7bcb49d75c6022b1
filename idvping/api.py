"""
HTTP API.

POST /api/geo      {"ips": [...]}                          -> {"results": {ip: record}}
POST /api/ping     {"ip", "port"?, "attempts"?, "timeoutMs"?} -> {"ping", "samples", ...}
GET  /api/servers?region=asianormal                        -> {"region", "servers": [...]}
"""

from __future__ import annotations

import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Callable

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import config as const
from .cache import GeoCache
from .models import EMPTY_GEO
from .prober import EndpointProber
from .providers import build_providers
from .resolver import GeoResolver
from .servers import DOTTED_QUAD, ServerListError, ServerListSource

logger = logging.getLogger(__name__)

STRICT_IP = re.compile(r"(25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)(\.(25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)){3}", re.ASCII)

DEFAULT_PORT = 4000
DEFAULT_ATTEMPTS = 3
MAX_ATTEMPTS = 5
DEFAULT_TIMEOUT_MS = 2500
TIMEOUT_RANGE_MS = (500, 10000)
MAX_GEO_IPS = 100


class InvalidRequest(ValueError):
    """Client error, answered with HTTP 400."""


@dataclass
class PingRequest:
    ip: str
    port: int = DEFAULT_PORT
    attempts: int = DEFAULT_ATTEMPTS
    timeout_ms: int = DEFAULT_TIMEOUT_MS


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _clamp(value: int, low: int, high: int) -> int:
    return min(high, max(low, value))


def parse_geo_request(body: Any) -> list[str]:
    """Validated IP list; entries that are not dotted quads are dropped"""
    ips = body.get("ips") if isinstance(body, dict) else None
    if not isinstance(ips, list) or not ips or len(ips) > MAX_GEO_IPS:
        raise InvalidRequest(f"ips must be an array of 1-{MAX_GEO_IPS} IPs")
    return list(dict.fromkeys(ip for ip in ips if isinstance(ip, str) and DOTTED_QUAD.fullmatch(ip)))


def parse_ping_request(body: Any) -> PingRequest:
    if not isinstance(body, dict):
        raise InvalidRequest("invalid json")

    ip = body.get("ip")
    if not isinstance(ip, str) or not STRICT_IP.fullmatch(ip):
        raise InvalidRequest("invalid ip")

    raw_port = body.get("port")
    port = DEFAULT_PORT if raw_port is None else _as_int(raw_port)
    if port is None or port < 1 or port > 65535:
        raise InvalidRequest("invalid port")

    attempts = _as_int(body.get("attempts"))
    if attempts is None:
        attempts = DEFAULT_ATTEMPTS
    timeout_ms = _as_int(body.get("timeoutMs"))
    if timeout_ms is None:
        timeout_ms = DEFAULT_TIMEOUT_MS

    return PingRequest(
        ip=ip,
        port=port,
        attempts=_clamp(attempts, 1, MAX_ATTEMPTS),
        timeout_ms=_clamp(timeout_ms, *TIMEOUT_RANGE_MS),
    )


def server_prober(req: PingRequest) -> EndpointProber:
    return EndpointProber(
        attempts=req.attempts,
        timeout_ms=req.timeout_ms,
        min_valid_ms=0,
        max_valid_ms=req.timeout_ms,
        method="tcp",
    )


def _error(message: str, status: int = 400, **extra) -> JSONResponse:
    return JSONResponse({"error": message, **extra}, status_code=status)


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        raise InvalidRequest("invalid json") from None


def create_app(
    settings: const.Settings | None = None,
    resolver: GeoResolver | None = None,
    source: ServerListSource | None = None,
    prober_factory: Callable[[PingRequest], EndpointProber] = server_prober,
) -> FastAPI:
    settings = settings or const.Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = httpx.AsyncClient(
            timeout=const.SERVER_LIST_TIMEOUT,
            follow_redirects=True,
            headers={"User-Agent": const.USER_AGENT},
        )
        extra = []
        if app.state.resolver is None:
            routed, extra = build_providers(client, settings.geo)
            app.state.resolver = GeoResolver(routed, GeoCache(), extra)
        if app.state.source is None:
            app.state.source = ServerListSource(settings.regions, client=client)
        try:
            yield
        finally:
            for provider in extra:
                provider.close()
            await client.aclose()

    app = FastAPI(title="idvping", lifespan=lifespan)
    app.state.resolver = resolver
    app.state.source = source

    @app.exception_handler(InvalidRequest)
    async def invalid_request(request: Request, exc: InvalidRequest):
        return _error(str(exc))

    @app.post("/api/geo")
    async def geo(request: Request):
        ips = parse_geo_request(await _read_json(request))
        found = await request.app.state.resolver.resolve(ips) if ips else {}
        return {"results": {ip: found.get(ip, EMPTY_GEO).as_dict() for ip in ips}}

    @app.post("/api/ping")
    async def ping(request: Request):
        req = parse_ping_request(await _read_json(request))
        result = await prober_factory(req).measure(req.ip, req.port)
        return JSONResponse(
            {
                "ping": result.ping,
                "samples": result.samples,
                "source": "server-tcp-connect",
                "attempts": req.attempts,
                "timeoutMs": req.timeout_ms,
            },
            headers={"Cache-Control": "no-store, max-age=0"},
        )

    @app.get("/api/servers")
    async def servers(request: Request, region: str | None = None):
        valid = list(settings.regions)
        if not region or region not in settings.regions:
            return _error("invalid region", valid=valid)
        try:
            endpoints = await request.app.state.source.fetch_endpoints(region)
        except ServerListError as e:
            return _error("fetch failed", status=502, detail=str(e))
        return {"region": region, "servers": [ep.as_dict() for ep in endpoints]}

    return app
