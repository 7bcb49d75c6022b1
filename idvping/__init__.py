"""
idvping: game server latency scanner

Probes every server of a region, finds which server group is currently
active, and tags reachable servers with country/organization info pulled
from several IP geolocation providers.
"""

__version__ = "0.1.0"
