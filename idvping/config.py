"""Defaults and YAML settings loader."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path

import yaml

# Probe timing (milliseconds)
PROBE_ATTEMPTS = 3
PROBE_TIMEOUT_MS = 4000
PROBE_INTERVAL_MS = 30
MIN_VALID_PING_MS = 1
MAX_VALID_PING_MS = 4000
ABORT_SLACK_MS = 20
PROBE_METHODS = ("tcp", "http")

# Early termination: sibling group must show this many reachable servers
SIBLING_SUCCESS_MIN = 3

# Geo lookups
GEO_WORKERS = 8
GEO_TIMEOUT = 5.0
GEO_DEBOUNCE = 0.3
GEO_BATCH_LIMIT = 100
GEO_QUEUE_SIZE = 256
GEO_PROVIDERS = ["ip-api", "ipwhois", "ipapi"]

# Server lists
SERVER_LIST_TTL = 300
SERVER_LIST_TIMEOUT = 10.0
SERVER_PORT_RANGE = (4000, 4999)

USER_AGENT = "idvping/0.1 (+https://github.com/; latency checker)"


@dataclass(frozen=True)
class Region:
    id: str
    label: str
    url: str
    has_groups: bool = True
    timeout_threshold: int = 5
    disabled: bool = False


# Asia tends to have a single clearly active datacenter, so fewer timeouts suffice
REGIONS = {
    "asianormal": Region(
        "asianormal",
        "Asia Server",
        "http://h55na.update.easebar.com/server_list_asianormal_game.txt",
        timeout_threshold=3,
    ),
    "usnormal": Region(
        "usnormal",
        "NA-EU Server",
        "http://h55na.update.easebar.com/server_list_usnormal_game.txt",
    ),
    "asiatest": Region(
        "asiatest",
        "Asia Test Server",
        "http://h55na.update.easebar.com/server_list_asiatest_game.txt",
        has_groups=False,
        disabled=True,
    ),
    "ustest": Region(
        "ustest",
        "NA-EU Test Server",
        "http://h55na.update.easebar.com/server_list_ustest_game.txt",
        has_groups=False,
        disabled=True,
    ),
}

GROUP_LABELS = {
    "asianormal": {"A": "Southeast Asia Block", "B": "East Asia / Japan Block"},
    "default": {"A": "North America Block", "B": "Europe Block"},
}


@dataclass
class ProbeSettings:
    attempts: int = PROBE_ATTEMPTS
    timeout_ms: int = PROBE_TIMEOUT_MS
    interval_ms: int = PROBE_INTERVAL_MS
    method: str = "tcp"


@dataclass
class GeoSettings:
    providers: list[str] = field(default_factory=lambda: list(GEO_PROVIDERS))
    workers: int = GEO_WORKERS
    timeout: float = GEO_TIMEOUT
    mmdb: Path | None = None


@dataclass
class Settings:
    probe: ProbeSettings = field(default_factory=ProbeSettings)
    geo: GeoSettings = field(default_factory=GeoSettings)
    regions: dict[str, Region] = field(default_factory=lambda: dict(REGIONS))

    def active_regions(self) -> list[Region]:
        return [r for r in self.regions.values() if not r.disabled]


def _expect(value, kind, key: str):
    if not isinstance(value, kind) or isinstance(value, bool) and kind is not bool:
        names = kind.__name__ if isinstance(kind, type) else "/".join(k.__name__ for k in kind)
        raise ValueError(f"{key}: expected {names}, got {type(value).__name__}")
    return value


def _section(data: dict, key: str) -> dict:
    value = data.get(key) or {}
    return _expect(value, dict, key)


def load_settings(path: Path | None = None) -> Settings:
    """Load settings from a YAML file; missing file sections keep their defaults"""
    settings = Settings()
    if path is None:
        return settings

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    _expect(data, dict, str(path))

    probe = _section(data, "probe")
    if "attempts" in probe:
        settings.probe.attempts = _expect(probe["attempts"], int, "probe.attempts")
    if "timeout_ms" in probe:
        settings.probe.timeout_ms = _expect(probe["timeout_ms"], int, "probe.timeout_ms")
    if "interval_ms" in probe:
        settings.probe.interval_ms = _expect(probe["interval_ms"], int, "probe.interval_ms")
    if "method" in probe:
        method = _expect(probe["method"], str, "probe.method")
        if method not in PROBE_METHODS:
            raise ValueError(f"probe.method: must be one of {', '.join(PROBE_METHODS)}")
        settings.probe.method = method

    geo = _section(data, "geo")
    if "providers" in geo:
        names = _expect(geo["providers"], list, "geo.providers")
        settings.geo.providers = [_expect(n, str, "geo.providers[]") for n in names]
        unknown = [n for n in settings.geo.providers if n not in GEO_PROVIDERS]
        if unknown:
            raise ValueError(f"geo.providers: unknown provider(s) {', '.join(unknown)}")
    if "workers" in geo:
        settings.geo.workers = max(1, _expect(geo["workers"], int, "geo.workers"))
    if "timeout" in geo:
        settings.geo.timeout = float(_expect(geo["timeout"], (int, float), "geo.timeout"))
    if geo.get("mmdb"):
        settings.geo.mmdb = Path(_expect(geo["mmdb"], str, "geo.mmdb")).expanduser()

    for region_id, overrides in _section(data, "regions").items():
        overrides = _expect(overrides or {}, dict, f"regions.{region_id}")
        region = settings.regions.get(region_id)
        if region is None:
            url = _expect(overrides.get("url"), str, f"regions.{region_id}.url")
            region = Region(region_id, overrides.get("label", region_id), url)
        changes = {}
        for key, kind in (("timeout_threshold", int), ("disabled", bool), ("has_groups", bool), ("url", str), ("label", str)):
            if key in overrides:
                changes[key] = _expect(overrides[key], kind, f"regions.{region_id}.{key}")
        settings.regions[region_id] = replace(region, **changes)

    return settings
