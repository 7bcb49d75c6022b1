import asyncio

import pytest

from idvping.cache import GeoCache
from idvping.models import EMPTY_GEO, GeoRecord, merge
from idvping.resolver import GeoQueue, GeoResolver, bucket_for


class FakeProvider:
    def __init__(self, name, answers=None, default=EMPTY_GEO):
        self.name = name
        self.answers = answers or {}
        self.default = default
        self.calls = []

    async def lookup_many(self, ips):
        ips = list(ips)
        self.calls.append(ips)
        await asyncio.sleep(0)
        return {ip: self.answers.get(ip, self.default) for ip in ips}


def test_merge_prefers_non_empty_fields_of_later_record():
    a = GeoRecord("JP", "Japan", "")
    b = GeoRecord("", "Nippon", "NetEase")
    assert merge(a, b) == GeoRecord("JP", "Nippon", "NetEase")
    assert merge(a, EMPTY_GEO) == a
    assert merge(EMPTY_GEO, b) == b


def test_geo_record_has_info():
    assert not EMPTY_GEO.has_info
    assert GeoRecord(org="x").has_info
    assert GeoRecord(country_code=" us ").country_code == "US"


@pytest.mark.parametrize(
    "ip,expected",
    [
        ("1.2.3.0", 0),
        ("1.2.3.1", 0),
        ("1.2.3.2", 0),
        ("1.2.3.3", 1),
        ("1.2.3.4", 2),
        ("1.2.3.5", 2),
        ("8.8.8.6", 0),
        ("9.9.9.9", 1),
        ("10.0.0.255", 1),
    ],
)
def test_bucket_for_uses_last_octet(ip, expected):
    assert bucket_for(ip) == expected
    assert bucket_for(ip) == bucket_for(ip)


def test_bucket_split_proportions():
    counts = [0, 0, 0]
    for octet in range(252):
        counts[bucket_for(f"1.1.1.{octet}")] += 1
    assert counts == [126, 42, 84]


def test_bucket_for_fewer_providers():
    assert bucket_for("1.1.1.5", n_providers=2) == 1
    assert bucket_for("1.1.1.5", n_providers=1) == 0
    assert bucket_for("garbage") == 0


def test_resolve_routes_each_ip_to_its_bucket():
    full = {ip: GeoRecord("US", "United States", "Org") for ip in ("1.1.1.0", "1.1.1.3", "1.1.1.4")}
    providers = [FakeProvider(f"p{i}", full) for i in range(3)]
    resolver = GeoResolver(providers, GeoCache())

    results = asyncio.run(resolver.resolve(["1.1.1.0", "1.1.1.3", "1.1.1.4"]))

    assert providers[0].calls == [["1.1.1.0"]]
    assert providers[1].calls == [["1.1.1.3"]]
    assert providers[2].calls == [["1.1.1.4"]]
    assert all(r == GeoRecord("US", "United States", "Org") for r in results.values())


def test_secondary_provider_fills_in_for_empty_primary():
    primary = FakeProvider("ipwhois")
    secondary = FakeProvider("ip-api", {"9.9.9.9": GeoRecord("JP", "Japan", "Quad9")})
    third = FakeProvider("ipapi")
    cache = GeoCache()
    resolver = GeoResolver([secondary, primary, third], cache)

    results = asyncio.run(resolver.resolve(["9.9.9.9"]))

    assert primary.calls == [["9.9.9.9"]]
    assert secondary.calls == [["9.9.9.9"]]
    assert results["9.9.9.9"].country_code == "JP"
    assert cache.get("9.9.9.9") == GeoRecord("JP", "Japan", "Quad9")


def test_enrichment_only_for_incomplete_records():
    complete = GeoRecord("DE", "Germany", "Hetzner")
    partial = GeoRecord("FR", "France", "")
    p0 = FakeProvider("p0", {"1.1.1.0": complete, "1.1.1.1": partial})
    p1 = FakeProvider("p1", default=GeoRecord("", "", "OVH"))
    p2 = FakeProvider("p2")
    resolver = GeoResolver([p0, p1, p2], GeoCache())

    results = asyncio.run(resolver.resolve(["1.1.1.0", "1.1.1.1"]))

    assert results["1.1.1.0"] == complete
    assert results["1.1.1.1"] == GeoRecord("FR", "France", "OVH")
    assert p1.calls == [["1.1.1.1"]]
    assert p2.calls == [["1.1.1.1"]]


def test_enrichment_can_override_fields():
    p0 = FakeProvider("p0", {"1.1.1.0": GeoRecord("FR", "France", "")})
    p1 = FakeProvider("p1", {"1.1.1.0": GeoRecord("", "République française", "OVH")})
    resolver = GeoResolver([p0, p1], GeoCache())
    result = asyncio.run(resolver.resolve(["1.1.1.0"]))["1.1.1.0"]
    assert result == GeoRecord("FR", "République française", "OVH")


def test_cached_ips_skip_providers():
    provider = FakeProvider("p0", default=GeoRecord("SG", "Singapore", "AWS"))
    cache = GeoCache()
    resolver = GeoResolver([provider], cache)

    first = asyncio.run(resolver.resolve(["5.5.5.5"]))
    second = asyncio.run(resolver.resolve(["5.5.5.5"]))

    assert first == second
    assert len(provider.calls) == 1


def test_empty_results_are_not_cached():
    provider = FakeProvider("p0")
    cache = GeoCache()
    resolver = GeoResolver([provider], cache)

    results = asyncio.run(resolver.resolve(["5.5.5.5"]))
    asyncio.run(resolver.resolve(["5.5.5.5"]))

    assert results == {"5.5.5.5": EMPTY_GEO}
    assert "5.5.5.5" not in cache
    assert len(provider.calls) == 2


def test_extra_providers_only_enrich():
    routed = FakeProvider("p0", {"1.1.1.0": GeoRecord("KR", "South Korea", "")})
    local = FakeProvider("mmdb", {"1.1.1.0": GeoRecord("", "", "KT Corp")})
    resolver = GeoResolver([routed], GeoCache(), extra_providers=[local])

    result = asyncio.run(resolver.resolve(["1.1.1.0"]))["1.1.1.0"]

    assert result == GeoRecord("KR", "South Korea", "KT Corp")
    assert local.calls == [["1.1.1.0"]]


def test_resolver_requires_providers():
    with pytest.raises(ValueError):
        GeoResolver([], GeoCache())


def test_cache_refuses_empty_records():
    cache = GeoCache()
    assert cache.put("1.1.1.1", EMPTY_GEO) is False
    assert cache.put("1.1.1.1", GeoRecord(country="Japan")) is True
    hits, misses = cache.split(["1.1.1.1", "2.2.2.2", "2.2.2.2"])
    assert hits == {"1.1.1.1": GeoRecord(country="Japan")}
    assert misses == ["2.2.2.2"]
    assert len(cache) == 1


def test_geo_queue_batches_arrivals():
    provider = FakeProvider("p0", default=GeoRecord("JP", "Japan", "NetEase"))
    resolver = GeoResolver([provider], GeoCache())
    received = []

    async def scenario():
        queue = GeoQueue(resolver, on_result=lambda ip, rec: received.append(ip), debounce=0.05)
        queue.start()
        for ip in ("1.1.1.1", "2.2.2.2", "1.1.1.1"):
            await queue.enqueue(ip)
        await asyncio.sleep(0.2)
        await queue.enqueue("1.1.1.1")
        await queue.close()
        return queue

    queue = asyncio.run(scenario())
    assert provider.calls == [["1.1.1.1", "2.2.2.2"]]
    assert received == ["1.1.1.1", "2.2.2.2", "1.1.1.1"]
    assert queue.results["2.2.2.2"].org == "NetEase"


def test_geo_queue_close_flushes_pending():
    provider = FakeProvider("p0", default=GeoRecord("US", "United States", ""))
    resolver = GeoResolver([provider], GeoCache())

    async def scenario():
        queue = GeoQueue(resolver, debounce=10)
        queue.start()
        await queue.enqueue("3.3.3.3")
        await queue.close()
        return queue.results

    assert asyncio.run(scenario()) == {"3.3.3.3": GeoRecord("US", "United States", "")}
