"""Data types shared by the scanner, the geo resolver and the API."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, fields
from enum import Enum


class ProbeStatus(str, Enum):
    WAITING = "waiting"
    MEASURING = "measuring"
    DONE = "done"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (ProbeStatus.DONE, ProbeStatus.TIMEOUT, ProbeStatus.SKIPPED)


@dataclass(frozen=True)
class Endpoint:
    """One game server instance as listed by the server list."""

    server_id: str
    ip: str
    port: int
    index: int
    group: str | None = None

    def as_dict(self) -> dict:
        return {"ip": self.ip, "port": self.port, "group": self.group, "serverId": self.server_id}


@dataclass
class ProbeOutcome:
    ping: int | None = None
    status: ProbeStatus = ProbeStatus.WAITING

    def _move(self, status: ProbeStatus, ping: int | None = None) -> None:
        if self.status.terminal:
            raise ValueError(f"outcome already {self.status.value}, cannot become {status.value}")
        self.status = status
        self.ping = ping

    def start(self) -> None:
        self._move(ProbeStatus.MEASURING)

    def finish(self, ping: int | None) -> None:
        self._move(ProbeStatus.DONE if ping is not None else ProbeStatus.TIMEOUT, ping)

    def skip(self) -> None:
        self._move(ProbeStatus.SKIPPED)


@dataclass
class ProbeResult:
    """Reduced measurement plus the raw samples it came from."""

    ping: int | None
    samples: list[float] = field(default_factory=list)


class GroupStats:
    """
    Running success/timeout counters of one server group.

    Written by the group's own prober and read by the sibling group for the
    early termination check, so every access goes through the lock.
    """

    def __init__(self, name: str = "A"):
        self.name = name
        self._lock = threading.Lock()
        self._success = 0
        self._timeouts = 0

    @property
    def success_count(self) -> int:
        with self._lock:
            return self._success

    @property
    def timeout_count(self) -> int:
        with self._lock:
            return self._timeouts

    def record(self, outcome: ProbeOutcome) -> None:
        with self._lock:
            if outcome.ping is not None:
                self._success += 1
            elif outcome.status is ProbeStatus.TIMEOUT:
                self._timeouts += 1


@dataclass
class RegionResult:
    region: str
    active_group: str | None = None
    outcomes: dict[int, ProbeOutcome] = field(default_factory=dict)
    error: str | None = None


@dataclass(frozen=True)
class GeoRecord:
    country_code: str = ""
    country: str = ""
    org: str = ""

    def __post_init__(self):
        object.__setattr__(self, "country_code", (self.country_code or "").strip().upper())
        object.__setattr__(self, "country", (self.country or "").strip())
        object.__setattr__(self, "org", (self.org or "").strip())

    @property
    def has_info(self) -> bool:
        return bool(self.country_code or self.country or self.org)

    @property
    def complete(self) -> bool:
        return bool(self.country and self.org)

    def as_dict(self) -> dict[str, str]:
        return {"country_code": self.country_code, "country": self.country, "org": self.org}


EMPTY_GEO = GeoRecord()


def merge(base: GeoRecord, other: GeoRecord) -> GeoRecord:
    """Field-wise merge: a non-empty field of ``other`` wins, empty ones never overwrite."""
    values = {}
    for f in fields(GeoRecord):
        newer = getattr(other, f.name)
        values[f.name] = newer if newer else getattr(base, f.name)
    return GeoRecord(**values)
