import asyncio
import socket

import pytest

from idvping.prober import EndpointProber, reduce_samples


class ScriptedProber(EndpointProber):
    def __init__(self, samples, **kwargs):
        kwargs.setdefault("attempts", len(samples))
        kwargs.setdefault("interval_ms", 0)
        super().__init__(**kwargs)
        self.samples = list(samples)
        self.calls = 0

    async def sample_once(self, ip, port):
        self.calls += 1
        return self.samples.pop(0)


@pytest.mark.parametrize(
    "samples,expected",
    [
        ([10, 20, 30], 20),
        ([], None),
        ([None, None], None),
        ([5000], None),
        ([10, 20, 30, 5000], 20),
        ([10.4], 10),
        ([10.5], 11),
        ([30, 10], 30),
    ],
)
def test_reduce_samples(samples, expected):
    assert reduce_samples(samples, 1, 4000) == expected


def test_reduce_samples_floors_at_one_ms():
    assert reduce_samples([0.3], 0, 4000) == 1


def test_measure_uses_median_of_valid_trials():
    prober = ScriptedProber([30.0, None, 10.0, 4500.0, 20.0])
    result = asyncio.run(prober.measure("1.2.3.4", 4000))
    assert prober.calls == 5
    assert result.ping == 20
    assert result.samples == [10.0, 20.0, 30.0]


def test_measure_without_samples_is_unreachable():
    prober = ScriptedProber([None, None, None])
    result = asyncio.run(prober.measure("1.2.3.4", 4000))
    assert result.ping is None
    assert result.samples == []


def test_prober_is_callable_as_probe_function():
    prober = ScriptedProber([12.0])
    assert asyncio.run(prober("1.2.3.4", 4000)) == 12


def test_unknown_method_rejected():
    with pytest.raises(ValueError):
        EndpointProber(method="icmp")


def test_tcp_probe_against_local_listener():
    async def scenario():
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            prober = EndpointProber(attempts=2, timeout_ms=1000, interval_ms=0, min_valid_ms=0)
            return await prober.measure("127.0.0.1", port)
        finally:
            server.close()
            await server.wait_closed()

    result = asyncio.run(scenario())
    assert result.ping is not None and result.ping >= 1
    assert len(result.samples) == 2


def test_tcp_probe_refused_port_yields_nothing():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]

    prober = EndpointProber(attempts=2, timeout_ms=500, interval_ms=0, min_valid_ms=0)
    result = asyncio.run(prober.measure("127.0.0.1", port))
    assert result.ping is None


async def _with_listener(handler, fn):
    server = await asyncio.start_server(handler, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        return await fn(port)
    finally:
        server.close()
        await server.wait_closed()


def test_http_trial_counts_immediate_error_answer():
    prober = EndpointProber(attempts=2, timeout_ms=1000, interval_ms=0, min_valid_ms=0, method="http")
    result = asyncio.run(_with_listener(lambda r, w: w.close(), lambda port: prober.measure("127.0.0.1", port)))
    assert result.ping is not None and result.ping >= 1
    assert len(result.samples) == 2


def test_http_trial_silent_listener_times_out():
    async def silent(reader, writer):
        await reader.read()
        writer.close()

    prober = EndpointProber(attempts=1, timeout_ms=300, interval_ms=0, min_valid_ms=0, method="http")
    sample = asyncio.run(_with_listener(silent, lambda port: prober.sample_once("127.0.0.1", port)))
    assert sample is None


def test_http_trial_answer_inside_abort_slack_is_discarded():
    async def late_close(reader, writer):
        await asyncio.sleep(0.29)
        writer.close()

    # Answers arriving within ABORT_SLACK_MS of the timeout count as aborted
    prober = EndpointProber(attempts=1, timeout_ms=300, interval_ms=0, min_valid_ms=0, method="http")
    sample = asyncio.run(_with_listener(late_close, lambda port: prober.sample_once("127.0.0.1", port)))
    assert sample is None
