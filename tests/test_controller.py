"""Tests for speedctl.controller -- run states, selection, and progress polling."""

import asyncio
import json
import unittest
import warnings

from aiohttp import web
from aiohttp import test_utils

from speedctl.controller import SpeedtestController
from speedctl.errors import InvalidServerDefinition, InvalidStateTransition
from speedctl.snapshot import StatusSnapshot
from speedctl.state import RunState, TestPhase


def _server(name, base=None):
    return {
        "name": name,
        "server": base or f"https://{name}.example.net",
        "dlURL": "garbage.php",
        "ulURL": "empty.php",
        "pingURL": "empty.php",
        "getIpURL": "getIP.php",
    }


def _snap(phase, **fields):
    return StatusSnapshot(test_state=phase, **fields).to_json()


FINISHED = _snap(TestPhase.FINISHED, dl_status=90.0, ul_status=40.0, ping_status=12.0)


class FakeWorker:
    """Speaks the worker protocol, answering polls from a script.

    ``None`` entries in the script mean "no reply to this poll".  Once the
    script runs out the worker stops answering.
    """

    def __init__(self, reply, script):
        self.reply = reply
        self.script = list(script)
        self.messages = []
        self.aborted = False
        self.terminated = False

    def post_message(self, message):
        self.messages.append(message)
        if message == "abort":
            self.aborted = True
        elif message == "status":
            if self.aborted:
                data = _snap(TestPhase.ABORTED)
            elif self.script:
                data = self.script.pop(0)
            else:
                data = None
            if data is not None:
                asyncio.get_running_loop().call_soon(self.reply, data)

    def terminate(self):
        self.terminated = True

    @property
    def start_settings(self):
        start = [m for m in self.messages if m.startswith("start ")]
        return json.loads(start[0][len("start "):])


class FakeProbe:
    """Async-context-manager probe with fixed per-server latencies."""

    def __init__(self, latencies):
        self.latencies = latencies

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    async def probe_server_best(self, candidate):
        candidate.best_latency_ms = self.latencies[candidate.server.name]
        return candidate.best_latency_ms


def _controller(script=(), latencies=None, **kwargs):
    workers = []

    def factory(reply):
        w = FakeWorker(reply, script)
        workers.append(w)
        return w

    kwargs.setdefault("poll_interval", 0.01)
    if latencies is not None:
        kwargs["probe_factory"] = lambda: FakeProbe(latencies)
    return SpeedtestController(factory, **kwargs), workers


class TestConfiguration(unittest.TestCase):
    def test_initial_state(self):
        c, _ = _controller()
        self.assertEqual(c.get_state(), RunState.CONFIGURING)
        self.assertEqual(c.state, RunState.CONFIGURING)

    def test_configure_records_value(self):
        c, _ = _controller()
        c.configure("time_dl_max", 5)
        self.assertEqual(c.settings["time_dl_max"], 5)

    def test_settings_is_a_copy(self):
        c, _ = _controller()
        c.settings["x"] = 1
        self.assertNotIn("x", c.settings)

    def test_non_string_key_rejected(self):
        c, _ = _controller()
        with self.assertRaises(TypeError):
            c.configure(1, "x")

    def test_invalid_tuning_values(self):
        with self.assertRaises(ValueError):
            SpeedtestController(poll_interval=0)
        with self.assertRaises(ValueError):
            SpeedtestController(selection_concurrency=0)


class TestServerRegistration(unittest.TestCase):
    def test_first_add_moves_to_adding_servers(self):
        c, _ = _controller()
        c.add_server(_server("a"))
        self.assertEqual(c.state, RunState.ADDING_SERVERS)
        self.assertTrue(c.settings["mpot"])
        self.assertEqual(len(c.catalog), 1)

    def test_add_normalises_base_url(self):
        c, _ = _controller()
        s = c.add_server(_server("a", base="//a.example.net"))
        self.assertEqual(s.server, "https://a.example.net/")

    def test_invalid_server_leaves_state(self):
        c, _ = _controller()
        bad = _server("a")
        del bad["pingURL"]
        with self.assertRaises(InvalidServerDefinition):
            c.add_server(bad)
        self.assertEqual(c.state, RunState.CONFIGURING)
        self.assertEqual(len(c.catalog), 0)

    def test_add_servers_stops_at_first_invalid(self):
        c, _ = _controller()
        bad = _server("b")
        bad["name"] = ""
        with self.assertRaises(InvalidServerDefinition):
            c.add_servers([_server("a"), bad, _server("c")])
        self.assertEqual([s.name for s in c.catalog], ["a"])

    def test_add_after_selection_rejected(self):
        c, _ = _controller()
        c.set_selected_server(_server("a"))
        with self.assertRaises(InvalidStateTransition):
            c.add_server(_server("b"))

    def test_set_selected_server(self):
        c, _ = _controller()
        s = c.set_selected_server(_server("a"))
        self.assertEqual(c.state, RunState.SERVER_SELECTED)
        self.assertIs(c.get_selected_server(), s)

    def test_set_selected_server_validates(self):
        c, _ = _controller()
        with self.assertRaises(InvalidServerDefinition):
            c.set_selected_server({"name": "x"})
        self.assertEqual(c.state, RunState.CONFIGURING)

    def test_get_selected_server_without_selection(self):
        c, _ = _controller()
        with self.assertRaises(InvalidStateTransition):
            c.get_selected_server()
        c.add_server(_server("a"))
        with self.assertRaises(InvalidStateTransition):
            c.get_selected_server()

    def test_start_requires_event_loop(self):
        c, _ = _controller()
        with self.assertRaises(RuntimeError):
            c.start()
        self.assertEqual(c.state, RunState.CONFIGURING)

    def test_abort_before_start_rejected(self):
        for prepare in (lambda c: None,
                        lambda c: c.add_server(_server("a")),
                        lambda c: c.set_selected_server(_server("a"))):
            c, _ = _controller()
            prepare(c)
            with self.assertRaises(InvalidStateTransition):
                c.abort()


class TestSelection(unittest.IsolatedAsyncioTestCase):
    async def test_selects_lowest_latency(self):
        c, _ = _controller(latencies={"a": 50.0, "b": -1.0, "c": 20.0})
        c.add_servers([_server("a"), _server("b"), _server("c")])
        best = await c.select_best_server()
        self.assertEqual(best.name, "c")
        self.assertEqual(c.state, RunState.SERVER_SELECTED)
        self.assertIs(c.get_selected_server(), best)

    async def test_no_servers_added(self):
        c, _ = _controller(latencies={})
        with self.assertRaisesRegex(InvalidStateTransition, "No test points"):
            await c.select_best_server()

    async def test_select_after_selected(self):
        c, _ = _controller(latencies={"a": 5.0})
        c.add_server(_server("a"))
        await c.select_best_server()
        with self.assertRaisesRegex(InvalidStateTransition, "already selected"):
            await c.select_best_server()

    async def test_all_unreachable(self):
        c, _ = _controller(latencies={"a": -1.0, "b": -1.0})
        c.add_servers([_server("a"), _server("b")])
        self.assertIsNone(await c.select_best_server())
        self.assertEqual(c.state, RunState.ADDING_SERVERS)

    async def test_select_only_once(self):
        c, _ = _controller(latencies={"a": -1.0})
        c.add_server(_server("a"))
        await c.select_best_server()
        with self.assertRaisesRegex(InvalidStateTransition, "already called"):
            await c.select_best_server()

    async def test_concurrent_second_select_rejected(self):
        c, _ = _controller(latencies={"a": 5.0})
        c.add_server(_server("a"))
        first = asyncio.ensure_future(c.select_best_server())
        await asyncio.sleep(0)
        with self.assertRaises(InvalidStateTransition):
            await c.select_best_server()
        await first

    async def test_select_while_running(self):
        c, _ = _controller()
        c.start()
        with self.assertRaises(InvalidStateTransition):
            await c.select_best_server()


class TestRun(unittest.IsolatedAsyncioTestCase):
    async def test_start_from_configuring(self):
        c, workers = _controller([FINISHED])
        c.configure("url_dl", "https://x.net/garbage.php")
        c.start()
        self.assertEqual(c.state, RunState.RUNNING)
        self.assertEqual(workers[0].start_settings, {"url_dl": "https://x.net/garbage.php"})
        self.assertFalse(await asyncio.wait_for(c.wait(), 2))
        self.assertEqual(c.state, RunState.DONE)

    async def test_start_while_adding_servers(self):
        c, _ = _controller()
        c.add_server(_server("a"))
        with self.assertRaises(InvalidStateTransition) as adding:
            c.start()

        c2, _ = _controller()
        c2.start()
        with self.assertRaises(InvalidStateTransition) as running:
            c2.start()
        self.assertNotEqual(str(adding.exception), str(running.exception))

    async def test_start_derives_server_urls(self):
        c, workers = _controller([FINISHED])
        c.set_selected_server(_server("a", base="https://a.net/st"))
        c.start()
        settings = workers[0].start_settings
        self.assertEqual(settings["url_dl"], "https://a.net/st/garbage.php")
        self.assertEqual(settings["url_ul"], "https://a.net/st/empty.php")
        self.assertEqual(settings["url_ping"], "https://a.net/st/empty.php")
        self.assertEqual(settings["url_getIp"], "https://a.net/st/getIP.php")
        self.assertEqual(json.loads(settings["telemetry_extra"]), {"server": "a"})

    async def test_telemetry_extra_combined_with_server(self):
        c, workers = _controller([FINISHED])
        c.configure("telemetry_extra", "room 12")
        c.set_selected_server(_server("a"))
        c.start()
        extra = json.loads(workers[0].start_settings["telemetry_extra"])
        self.assertEqual(extra, {"server": "a", "extra": "room 12"})

    async def test_configure_while_running_rejected(self):
        c, workers = _controller()
        c.start()
        with self.assertRaises(InvalidStateTransition):
            c.configure("time_dl_max", 1)
        self.assertNotIn("time_dl_max", workers[0].start_settings)

    async def test_set_selected_server_while_running_rejected(self):
        c, _ = _controller()
        c.start()
        with self.assertRaises(InvalidStateTransition):
            c.set_selected_server(_server("a"))

    async def test_add_server_while_running_rejected(self):
        c, _ = _controller()
        c.start()
        with self.assertRaises(InvalidStateTransition):
            c.add_server(_server("a"))

    async def test_updates_are_deduplicated(self):
        s1 = _snap(TestPhase.DOWNLOAD, dl_status=10.0, dl_progress=0.1)
        s2 = _snap(TestPhase.DOWNLOAD, dl_status=20.0, dl_progress=0.2)
        c, _ = _controller([s1, s1, s2, s2, FINISHED])
        updates, completions = [], []
        c.on_update = updates.append
        c.on_complete = completions.append
        c.start()
        await asyncio.wait_for(c.wait(), 2)
        self.assertEqual([u.to_json() for u in updates], [s1, s2, FINISHED])
        self.assertEqual(completions, [False])

    async def test_missing_replies_are_tolerated(self):
        s1 = _snap(TestPhase.STARTING)
        c, _ = _controller([None, s1, None, None, FINISHED])
        updates = []
        c.on_update = updates.append
        c.start()
        self.assertFalse(await asyncio.wait_for(c.wait(), 2))
        self.assertEqual(len(updates), 2)

    async def test_malformed_reply_is_ignored(self):
        c, _ = _controller(["not json", "[1, 2]", FINISHED])
        with self.assertLogs("speedctl.controller", level="WARNING"):
            c.start()
            self.assertFalse(await asyncio.wait_for(c.wait(), 2))

    async def test_polling_stops_after_completion(self):
        c, workers = _controller([FINISHED, FINISHED, FINISHED])
        completions = []
        c.on_complete = completions.append
        c.start()
        await asyncio.wait_for(c.wait(), 2)
        polls = workers[0].messages.count("status")
        await asyncio.sleep(0.05)
        self.assertEqual(workers[0].messages.count("status"), polls)
        self.assertTrue(workers[0].terminated)
        self.assertEqual(completions, [False])

    async def test_callback_exceptions_are_logged(self):
        def _boom(*args):
            raise RuntimeError("caller bug")

        c, _ = _controller([_snap(TestPhase.DOWNLOAD), FINISHED])
        c.on_update = _boom
        c.on_complete = _boom
        with self.assertLogs("speedctl.controller", level="ERROR") as logs:
            c.start()
            self.assertFalse(await asyncio.wait_for(c.wait(), 2))
        self.assertEqual(len([r for r in logs.records if r.levelname == "ERROR"]), 3)
        self.assertEqual(c.state, RunState.DONE)

    async def test_abort_after_done_rejected(self):
        c, _ = _controller([FINISHED])
        c.start()
        await asyncio.wait_for(c.wait(), 2)
        with self.assertRaises(InvalidStateTransition):
            c.abort()

    async def test_wait_before_start_rejected(self):
        c, _ = _controller()
        with self.assertRaises(InvalidStateTransition):
            await c.wait()

    async def test_rerun_after_done(self):
        c, workers = _controller([FINISHED])
        completions = []
        c.on_complete = completions.append
        c.start()
        await asyncio.wait_for(c.wait(), 2)
        c.configure("time_dl_max", 3)
        c.start()
        self.assertEqual(c.state, RunState.RUNNING)
        await asyncio.wait_for(c.wait(), 2)
        self.assertEqual(len(workers), 2)
        self.assertEqual(workers[1].start_settings["time_dl_max"], 3)
        self.assertEqual(completions, [False, False])

    async def test_controllers_are_independent(self):
        a, wa = _controller([FINISHED])
        b, wb = _controller()
        a.configure("k", "a")
        b.add_server(_server("x"))
        a.start()
        await asyncio.wait_for(a.wait(), 2)
        self.assertEqual(a.state, RunState.DONE)
        self.assertEqual(b.state, RunState.ADDING_SERVERS)
        self.assertNotIn("k", b.settings)
        self.assertEqual(wb, [])


class TestEndToEnd(unittest.IsolatedAsyncioTestCase):
    async def test_select_then_run_all_phases(self):
        script = [
            _snap(TestPhase.STARTING),
            _snap(TestPhase.DOWNLOAD, dl_status=50.0, dl_progress=0.5),
            _snap(TestPhase.DOWNLOAD, dl_status=55.0, dl_progress=1.0),
            _snap(TestPhase.PING_JITTER, dl_status=55.0, ping_status=20.0, ping_progress=1.0),
            _snap(TestPhase.UPLOAD, dl_status=55.0, ul_status=12.0, ul_progress=1.0),
            FINISHED,
        ]
        c, workers = _controller(script, latencies={"s0": 50.0, "s1": -1.0, "s2": 20.0})
        c.add_servers([_server("s0"), _server("s1"), _server("s2")])

        best = await c.select_best_server()
        self.assertEqual(best.name, "s2")

        phases, completions = [], []
        c.on_update = lambda snap: phases.append(snap.phase)
        c.on_complete = completions.append
        c.start()
        self.assertFalse(await asyncio.wait_for(c.wait(), 2))

        distinct = [p for i, p in enumerate(phases) if i == 0 or phases[i - 1] != p]
        self.assertEqual(distinct, [
            TestPhase.STARTING,
            TestPhase.DOWNLOAD,
            TestPhase.PING_JITTER,
            TestPhase.UPLOAD,
            TestPhase.FINISHED,
        ])
        self.assertEqual(completions, [False])
        self.assertEqual(workers[0].start_settings["url_ping"], "https://s2.example.net/empty.php")

    async def test_abort_mid_run(self):
        script = [
            _snap(TestPhase.DOWNLOAD, dl_status=float(i), dl_progress=i / 1000)
            for i in range(1000)
        ]
        c, workers = _controller(script)
        updates, completions = [], []
        c.on_update = updates.append
        c.on_complete = completions.append

        c.start()
        await asyncio.sleep(0.05)
        c.abort()
        self.assertEqual(c.state, RunState.RUNNING)
        self.assertIn("abort", workers[0].messages)

        self.assertTrue(await asyncio.wait_for(c.wait(), 2))
        self.assertEqual(updates[-1].phase, TestPhase.ABORTED)
        self.assertEqual(completions, [True])

        seen = len(updates)
        await asyncio.sleep(0.05)
        self.assertEqual(len(updates), seen)


class TestLoadServerList(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        bad = _server("b")
        del bad["dlURL"]
        self.payloads = {
            "/good.json": json.dumps([_server("a"), _server("b", base="//b.example.net")]),
            "/bad.json": json.dumps([_server("a"), bad]),
            "/object.json": json.dumps({"name": "a"}),
            "/garbage.json": "<html>",
        }
        app = web.Application()
        app.router.add_get("/{name}", self._serve)
        self.server = test_utils.TestServer(app)
        await self.server.start_server()

    async def asyncTearDown(self):
        await self.server.close()

    async def _serve(self, request):
        body = self.payloads.get(request.path)
        if body is None:
            return web.Response(status=500, text="boom")
        return web.Response(text=body, content_type="application/json")

    def _url(self, path):
        return str(self.server.make_url(path))

    async def test_loads_and_registers(self):
        c, _ = _controller()
        servers = await c.load_server_list(self._url("/good.json"))
        self.assertEqual([s.name for s in servers], ["a", "b"])
        self.assertEqual(servers[1].server, "https://b.example.net/")
        self.assertEqual(len(c.catalog), 2)
        self.assertEqual(c.state, RunState.ADDING_SERVERS)

    async def test_invalid_element_registers_nothing(self):
        c, _ = _controller()
        self.assertIsNone(await c.load_server_list(self._url("/bad.json")))
        self.assertEqual(len(c.catalog), 0)

    async def test_non_list_payload(self):
        c, _ = _controller()
        self.assertIsNone(await c.load_server_list(self._url("/object.json")))

    async def test_unparseable_payload(self):
        c, _ = _controller()
        self.assertIsNone(await c.load_server_list(self._url("/garbage.json")))

    async def test_http_error(self):
        c, _ = _controller()
        self.assertIsNone(await c.load_server_list(self._url("/missing.json")))

    async def test_unreachable_host(self):
        c, _ = _controller()
        self.assertIsNone(await c.load_server_list("http://127.0.0.1:1/servers.json"))

    async def test_after_selection_rejected(self):
        c, _ = _controller()
        c.set_selected_server(_server("a"))
        with self.assertRaises(InvalidStateTransition):
            await c.load_server_list(self._url("/good.json"))


class TestModuleSource(unittest.TestCase):
    def test_compiles_without_warnings(self):
        import speedctl.controller

        with open(speedctl.controller.__file__, encoding="utf-8") as fh:
            source = fh.read()
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            compile(source, speedctl.controller.__file__, "exec")


if __name__ == "__main__":
    unittest.main()
