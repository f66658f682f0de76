"""Tests for speedctl.probe -- single pings and per-server best latency."""

import asyncio
import unittest

from aiohttp import web
from aiohttp import test_utils

from speedctl.probe import LatencyProbe, bust_cache
from speedctl.servers import ServerCandidate, validate_server


def _candidate(base="https://a.example.net/"):
    return ServerCandidate(server=validate_server({
        "name": "A",
        "server": base,
        "dlURL": "garbage.php",
        "ulURL": "empty.php",
        "pingURL": "empty.php",
        "getIpURL": "getIP.php",
    }))


class SequenceProbe(LatencyProbe):
    """Returns scripted latencies instead of touching the network."""

    def __init__(self, results, **kwargs):
        super().__init__(**kwargs)
        self.results = list(results)
        self.urls = []

    async def probe(self, url, timeout_ms=None):
        self.urls.append(url)
        return self.results.pop(0)


class TestBustCache(unittest.TestCase):
    def test_plain_url(self):
        url = bust_cache("https://a.net/empty.php")
        self.assertTrue(url.startswith("https://a.net/empty.php?cors=true&r="))

    def test_url_with_query(self):
        url = bust_cache("https://a.net/empty.php?x=1")
        self.assertTrue(url.startswith("https://a.net/empty.php?x=1&cors=true&r="))

    def test_markers_differ(self):
        self.assertNotEqual(bust_cache("https://a.net/"), bust_cache("https://a.net/"))


class TestProbeServerBest(unittest.IsolatedAsyncioTestCase):
    async def test_three_attempts_keep_minimum(self):
        probe = SequenceProbe([30.0, 20.0, 25.0, 10.0])
        c = _candidate()
        result = await probe.probe_server_best(c)
        self.assertEqual(result, 20.0)
        self.assertEqual(c.best_latency_ms, 20.0)
        self.assertEqual(len(probe.urls), 3)

    async def test_pings_the_ping_endpoint(self):
        probe = SequenceProbe([1.0, 1.0, 1.0])
        await probe.probe_server_best(_candidate())
        self.assertEqual(probe.urls, ["https://a.example.net/empty.php"] * 3)

    async def test_slow_first_ping_stops(self):
        probe = SequenceProbe([600.0, 10.0])
        result = await probe.probe_server_best(_candidate())
        self.assertEqual(result, 600.0)
        self.assertEqual(len(probe.urls), 1)

    async def test_threshold_is_inclusive(self):
        probe = SequenceProbe([30.0, 500.0, 10.0])
        result = await probe.probe_server_best(_candidate())
        self.assertEqual(result, 30.0)
        self.assertEqual(len(probe.urls), 2)

    async def test_first_failure_is_unreachable(self):
        probe = SequenceProbe([-1.0, 10.0])
        c = _candidate()
        self.assertEqual(await probe.probe_server_best(c), -1)
        self.assertFalse(c.reachable)
        self.assertEqual(len(probe.urls), 1)

    async def test_later_failure_keeps_best(self):
        probe = SequenceProbe([40.0, -1.0, 5.0])
        self.assertEqual(await probe.probe_server_best(_candidate()), 40.0)
        self.assertEqual(len(probe.urls), 2)

    async def test_other_scheme_is_skipped(self):
        probe = SequenceProbe([10.0], scheme="https")
        c = _candidate("http://plain.example.net/")
        self.assertEqual(await probe.probe_server_best(c), -1)
        self.assertEqual(probe.urls, [])

    async def test_custom_attempts(self):
        probe = SequenceProbe([9.0, 8.0, 7.0, 6.0, 5.0], max_attempts=5)
        self.assertEqual(await probe.probe_server_best(_candidate()), 5.0)


class TestProbeHttp(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.queries = []
        app = web.Application()
        app.router.add_get("/empty.php", self._empty)
        app.router.add_get("/full.php", self._full)
        app.router.add_get("/slow.php", self._slow)
        self.server = test_utils.TestServer(app)
        await self.server.start_server()

    async def asyncTearDown(self):
        await self.server.close()

    async def _empty(self, request):
        self.queries.append(dict(request.query))
        return web.Response()

    async def _full(self, request):
        return web.Response(text="not empty")

    async def _slow(self, request):
        await asyncio.sleep(0.3)
        return web.Response()

    def _url(self, path):
        return str(self.server.make_url(path))

    async def test_empty_body_measures_latency(self):
        async with LatencyProbe(scheme="http") as probe:
            latency = await probe.probe(self._url("/empty.php"))
        self.assertGreaterEqual(latency, 0)
        self.assertLess(latency, 2000)

    async def test_sends_cache_busting_query(self):
        async with LatencyProbe(scheme="http") as probe:
            await probe.probe(self._url("/empty.php"))
        self.assertEqual(self.queries[0]["cors"], "true")
        self.assertIn("r", self.queries[0])

    async def test_non_empty_body_fails(self):
        async with LatencyProbe(scheme="http") as probe:
            self.assertEqual(await probe.probe(self._url("/full.php")), -1)

    async def test_missing_endpoint_fails(self):
        async with LatencyProbe(scheme="http") as probe:
            # aiohttp's 404 page has a body
            self.assertEqual(await probe.probe(self._url("/nope.php")), -1)

    async def test_timeout_fails(self):
        async with LatencyProbe(scheme="http") as probe:
            self.assertEqual(await probe.probe(self._url("/slow.php"), timeout_ms=50), -1)

    async def test_zero_timeout_disables_timeout(self):
        async with LatencyProbe(scheme="http", timeout_ms=50) as probe:
            latency = await probe.probe(self._url("/slow.php"), timeout_ms=0)
        self.assertGreaterEqual(latency, 0)

    async def test_connection_refused_fails(self):
        async with LatencyProbe(scheme="http") as probe:
            self.assertEqual(await probe.probe("http://127.0.0.1:1/empty.php"), -1)

    async def test_server_best_over_http(self):
        c = _candidate(self._url("/"))
        async with LatencyProbe(scheme="http") as probe:
            latency = await probe.probe_server_best(c)
        self.assertGreaterEqual(latency, 0)
        self.assertEqual(len(self.queries), 3)

    async def test_requires_context_manager(self):
        with self.assertRaises(RuntimeError):
            await LatencyProbe().probe(self._url("/empty.php"))


if __name__ == "__main__":
    unittest.main()
