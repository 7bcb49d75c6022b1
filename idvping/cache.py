"""In-memory geo cache."""

from __future__ import annotations

import threading
from typing import Iterable

from .models import GeoRecord


class GeoCache:
    """
    IP -> GeoRecord map shared by every lookup in the process.

    Created once at startup and kept for the process lifetime: no eviction,
    no TTL. Only records carrying some information are stored, so failed
    lookups are retried on the next request.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._records: dict[str, GeoRecord] = {}

    def get(self, ip: str) -> GeoRecord | None:
        with self._lock:
            return self._records.get(ip)

    def split(self, ips: Iterable[str]) -> tuple[dict[str, GeoRecord], list[str]]:
        """Return (cached hits, uncached IPs in input order)"""
        hits, misses = {}, []
        with self._lock:
            for ip in ips:
                record = self._records.get(ip)
                if record is not None:
                    hits[ip] = record
                elif ip not in misses:
                    misses.append(ip)
        return hits, misses

    def put(self, ip: str, record: GeoRecord) -> bool:
        if not record.has_info:
            return False
        with self._lock:
            self._records[ip] = record
        return True

    def __contains__(self, ip: str) -> bool:
        with self._lock:
            return ip in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
