"""
Background transfer worker.

An actor reachable only by messages, compatible with LibreSpeed backends
(``garbage`` download endpoint, ``empty`` upload/ping endpoint, ``getIP``).
Commands posted with ``post_message``:

* ``"start <json settings>"`` -- run the test described by the settings.
* ``"status"`` -- reply with the current ``StatusSnapshot`` as JSON.
* ``"abort"`` -- cancel the running test and report ``ABORTED``.

Replies go through the ``reply`` callable given at construction.  The test
order comes from the ``test_order`` setting: ``I`` looks up the client IP,
``P`` measures ping and jitter, ``D`` downloads, ``U`` uploads and ``_``
pauses for a second.  The default, ``"IP_D_U"``, is LibreSpeed's: a run
reports STARTING, PING_JITTER, DOWNLOAD, UPLOAD and then FINISHED.  Pass
``test_order="DPU"`` for download before ping.

Upload throughput only counts requests the server answered with a success
status.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import random
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

from .constants import (
    CHUNK_SIZE,
    COMMON_HEADERS,
    DEFAULT_COUNT_PING,
    DEFAULT_DL_STREAMS,
    DEFAULT_GARBAGE_CHUNKS,
    DEFAULT_OVERHEAD_FACTOR,
    DEFAULT_TEST_ORDER,
    DEFAULT_TIME_DL_MAX,
    DEFAULT_TIME_UL_MAX,
    DEFAULT_UL_STREAMS,
    PHASE_PAUSE,
    UPLOAD_BUFFER_SIZE,
)
from .probe import bust_cache
from .snapshot import StatusSnapshot
from .state import TestPhase
from .stats import calculate_jitter, calculate_speed_mbps

logger = logging.getLogger(__name__)

_RETRY_DELAY = 0.2  # seconds before a failed stream reconnects


def _with_params(url: str, params: str) -> str:
    sep = "&" if "?" in url else "?"
    return f"{url}{sep}{params}"


class TransferWorker:
    """Runs download, upload and ping phases and reports their progress."""

    def __init__(self, reply: Callable[[str], None]) -> None:
        self._reply = reply
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._status = StatusSnapshot()
        self._settings: Dict[str, Any] = {}
        self._test: Optional[asyncio.Task] = None
        self._runner = asyncio.get_running_loop().create_task(self._run())

    # -- Message interface --------------------------------------------------

    def post_message(self, message: str) -> None:
        self._inbox.put_nowait(message)

    def terminate(self) -> None:
        """Stop the worker and any transfer still in flight."""
        if self._test is not None:
            self._test.cancel()
        self._runner.cancel()

    async def _run(self) -> None:
        while True:
            message = await self._inbox.get()
            self._dispatch(message)

    def _dispatch(self, message: str) -> None:
        if message == "status":
            self._reply(self._status.to_json())
        elif message == "abort":
            self._abort()
        elif message.startswith("start "):
            self._start(message[len("start "):])
        else:
            logger.debug("Ignoring unknown command %r", message)

    # -- Commands -----------------------------------------------------------

    def _start(self, payload: str) -> None:
        if self._status.phase != TestPhase.NOT_STARTED:
            logger.debug("Ignoring start: test already %s", self._status.phase.name)
            return
        try:
            settings = json.loads(payload)
        except ValueError as exc:
            logger.warning("Ignoring start with malformed settings: %s", exc)
            return
        if not isinstance(settings, dict):
            logger.warning("Ignoring start: settings must be a JSON object")
            return

        self._settings = settings
        self._status = StatusSnapshot(test_state=TestPhase.STARTING)
        self._test = asyncio.get_running_loop().create_task(self._execute())
        self._test.add_done_callback(self._on_test_done)

    def _abort(self) -> None:
        if self._status.phase.is_terminal:
            return
        if self._test is not None:
            self._test.cancel()
        self._status = StatusSnapshot(test_state=TestPhase.ABORTED)

    def _on_test_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Speed test crashed", exc_info=exc)
            self._status = StatusSnapshot(test_state=TestPhase.ABORTED)

    # -- Settings -----------------------------------------------------------

    def _setting(self, key: str, default: Any, cast: Callable[[Any], Any]) -> Any:
        value = self._settings.get(key, default)
        try:
            return cast(value)
        except (TypeError, ValueError):
            logger.warning("Invalid value %r for %s, using %r", value, key, default)
            return default

    # -- Test sequence ------------------------------------------------------

    async def _execute(self) -> None:
        order = self._setting("test_order", DEFAULT_TEST_ORDER, str)
        timeout = aiohttp.ClientTimeout(total=None, connect=5, sock_read=5)

        async with aiohttp.ClientSession(headers=COMMON_HEADERS, timeout=timeout) as session:
            for step in order:
                if step == "I":
                    await self._guarded("IP lookup", self._get_ip(session))
                elif step == "P":
                    await self._guarded("Ping", self._ping(session))
                elif step == "D":
                    await self._guarded("Download", self._download(session))
                elif step == "U":
                    await self._guarded("Upload", self._upload(session))
                elif step == "_":
                    await asyncio.sleep(PHASE_PAUSE)

        self._status = self._status.evolve(test_state=TestPhase.FINISHED)

    async def _guarded(self, name: str, phase: Awaitable[None]) -> None:
        try:
            await phase
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as exc:
            logger.warning("%s phase failed: %s", name, exc)

    # -- Phases -------------------------------------------------------------

    async def _get_ip(self, session: aiohttp.ClientSession) -> None:
        url = self._settings.get("url_getIp")
        if not url:
            return

        async with session.get(bust_cache(url)) as resp:
            resp.raise_for_status()
            text = await resp.text()

        try:
            data = json.loads(text)
            client_ip = data.get("processedString", "") if isinstance(data, dict) else text
        except ValueError:
            client_ip = text
        self._status = self._status.evolve(client_ip=str(client_ip).strip())

    async def _ping(self, session: aiohttp.ClientSession) -> None:
        self._status = self._status.evolve(test_state=TestPhase.PING_JITTER, ping_progress=0.0)
        url = self._settings.get("url_ping")
        count = max(1, self._setting("count_ping", DEFAULT_COUNT_PING, int))
        pings = []

        for i in range(count):
            if url:
                start = time.perf_counter()
                try:
                    async with session.get(bust_cache(url)) as resp:
                        await resp.read()
                    pings.append((time.perf_counter() - start) * 1000)
                except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
                    logger.debug("Ping %d/%d failed: %s", i + 1, count, exc)

            self._status = self._status.evolve(
                ping_status=round(min(pings), 2) if pings else 0.0,
                jitter_status=round(calculate_jitter(pings), 2),
                ping_progress=(i + 1) / count,
            )

    async def _download(self, session: aiohttp.ClientSession) -> None:
        self._status = self._status.evolve(test_state=TestPhase.DOWNLOAD, dl_progress=0.0)
        url = self._settings.get("url_dl")
        if not url:
            self._status = self._status.evolve(dl_progress=1.0)
            return

        duration = self._setting("time_dl_max", DEFAULT_TIME_DL_MAX, float)
        streams = max(1, self._setting("xhr_dlMultistream", DEFAULT_DL_STREAMS, int))
        chunks = self._setting("garbagePhp_chunkSize", DEFAULT_GARBAGE_CHUNKS, int)
        factor = self._setting("overheadCompensationFactor", DEFAULT_OVERHEAD_FACTOR, float)
        headers = {"Accept-Encoding": "identity"}

        total = 0
        start = time.perf_counter()
        end = start + duration

        def _report() -> None:
            elapsed = time.perf_counter() - start
            self._status = self._status.evolve(
                dl_status=round(calculate_speed_mbps(total, elapsed, factor), 2),
                dl_progress=min(elapsed / duration, 1.0) if duration > 0 else 1.0,
            )

        async def _stream() -> None:
            nonlocal total
            while time.perf_counter() < end:
                target = _with_params(url, f"r={random.random()}&ckSize={chunks}")
                try:
                    async with session.get(target, headers=headers) as resp:
                        resp.raise_for_status()
                        while time.perf_counter() < end:
                            chunk = await resp.content.read(CHUNK_SIZE)
                            if not chunk:
                                break
                            total += len(chunk)
                            _report()
                except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
                    logger.debug("Download stream error: %s", exc)
                    await asyncio.sleep(_RETRY_DELAY)

        await self._run_streams(_stream, streams, end)
        _report()
        self._status = self._status.evolve(dl_progress=1.0)

    async def _upload(self, session: aiohttp.ClientSession) -> None:
        self._status = self._status.evolve(test_state=TestPhase.UPLOAD, ul_progress=0.0)
        url = self._settings.get("url_ul")
        if not url:
            self._status = self._status.evolve(ul_progress=1.0)
            return

        duration = self._setting("time_ul_max", DEFAULT_TIME_UL_MAX, float)
        streams = max(1, self._setting("xhr_ulMultistream", DEFAULT_UL_STREAMS, int))
        factor = self._setting("overheadCompensationFactor", DEFAULT_OVERHEAD_FACTOR, float)
        payload = os.urandom(UPLOAD_BUFFER_SIZE)
        headers = {"Content-Type": "application/octet-stream"}

        accepted = 0
        in_flight = 0
        start = time.perf_counter()
        end = start + duration

        def _report() -> None:
            elapsed = time.perf_counter() - start
            self._status = self._status.evolve(
                ul_status=round(calculate_speed_mbps(accepted + in_flight, elapsed, factor), 2),
                ul_progress=min(elapsed / duration, 1.0) if duration > 0 else 1.0,
            )

        async def _body(sent: List[int]):
            nonlocal in_flight
            pos = 0
            while time.perf_counter() < end:
                chunk = payload[pos:pos + CHUNK_SIZE]
                pos = (pos + CHUNK_SIZE) % len(payload)
                yield chunk
                sent[0] += len(chunk)
                in_flight += len(chunk)
                _report()

        async def _stream() -> None:
            nonlocal accepted, in_flight
            while time.perf_counter() < end:
                target = _with_params(url, f"r={random.random()}")
                sent = [0]
                try:
                    async with session.post(target, data=_body(sent), headers=headers) as resp:
                        await resp.read()
                        resp.raise_for_status()
                    accepted += sent[0]
                except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
                    logger.debug("Upload stream error: %s", exc)
                    await asyncio.sleep(_RETRY_DELAY)
                finally:
                    # Sent bytes only count once the server has accepted the request
                    in_flight -= sent[0]

        await self._run_streams(_stream, streams, end)
        _report()
        self._status = self._status.evolve(ul_progress=1.0)

    @staticmethod
    async def _run_streams(
        stream: Callable[[], Awaitable[None]],
        count: int,
        end: float,
    ) -> None:
        """Run *count* copies of *stream* until they finish or *end* passes."""
        tasks = [asyncio.create_task(stream()) for _ in range(count)]
        remaining = end - time.perf_counter()
        try:
            await asyncio.wait(tasks, timeout=max(remaining, 0) + 1.0)
        finally:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
