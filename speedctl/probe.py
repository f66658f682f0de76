"""
HTTP latency probing.

A ping endpoint is expected to answer a GET with an empty body.  The elapsed
time is taken from an ``aiohttp`` trace (request headers sent -> response
headers received) when that is available and tighter than the wall-clock
delta around the whole request.
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
from types import SimpleNamespace
from typing import Any, Dict, Optional

import aiohttp

from .constants import (
    COMMON_HEADERS,
    DEFAULT_SCHEME,
    PING_ATTEMPTS,
    PING_TIMEOUT_MS,
    SLOW_THRESHOLD_MS,
    UNREACHABLE,
)
from .servers import ServerCandidate

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request timing trace
# ---------------------------------------------------------------------------

async def _on_request_headers_sent(
    session: aiohttp.ClientSession,
    ctx: SimpleNamespace,
    params: Any,
) -> None:
    timing = ctx.trace_request_ctx
    if isinstance(timing, dict):
        timing["sent"] = time.perf_counter()


async def _on_request_end(
    session: aiohttp.ClientSession,
    ctx: SimpleNamespace,
    params: Any,
) -> None:
    timing = ctx.trace_request_ctx
    if isinstance(timing, dict):
        timing["response"] = time.perf_counter()


def _timing_trace() -> aiohttp.TraceConfig:
    trace = aiohttp.TraceConfig()
    trace.on_request_headers_sent.append(_on_request_headers_sent)
    trace.on_request_end.append(_on_request_end)
    return trace


def bust_cache(url: str) -> str:
    """Append the CORS flag and a random marker so no cache answers the ping."""
    sep = "&" if "?" in url else "?"
    return f"{url}{sep}cors=true&r={random.random()}"


# ---------------------------------------------------------------------------
# Probe
# ---------------------------------------------------------------------------

class LatencyProbe:
    """Ping servers over HTTP.  Use as ``async with LatencyProbe() as probe``."""

    def __init__(
        self,
        *,
        scheme: str = DEFAULT_SCHEME,
        max_attempts: int = PING_ATTEMPTS,
        slow_threshold_ms: float = SLOW_THRESHOLD_MS,
        timeout_ms: Optional[float] = PING_TIMEOUT_MS,
    ) -> None:
        self.scheme = scheme
        self.max_attempts = max_attempts
        self.slow_threshold_ms = slow_threshold_ms
        self.timeout_ms = timeout_ms
        self._session: Optional[aiohttp.ClientSession] = None

    # -- Context manager ----------------------------------------------------

    async def __aenter__(self) -> LatencyProbe:
        self._session = aiohttp.ClientSession(
            headers=COMMON_HEADERS,
            trace_configs=[_timing_trace()],
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._session:
            await self._session.close()
            self._session = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError(
                "LatencyProbe must be used as an async context manager "
                "(async with LatencyProbe() as probe: ...)"
            )
        return self._session

    # -- Single request -----------------------------------------------------

    async def probe(self, url: str, timeout_ms: Optional[float] = None) -> float:
        """
        Issue one ping request and return its latency in ms.

        Returns ``UNREACHABLE`` on any transport error, timeout, or non-empty
        response body.  A *timeout_ms* of zero or less disables the timeout.
        """
        session = self._ensure_session()

        if timeout_ms is None:
            timeout_ms = self.timeout_ms
        if timeout_ms and timeout_ms > 0:
            timeout = aiohttp.ClientTimeout(total=timeout_ms / 1000)
        else:
            timeout = aiohttp.ClientTimeout(total=None)

        url = bust_cache(url)
        timing: Dict[str, float] = {}
        start = time.perf_counter()

        try:
            async with session.get(url, timeout=timeout, trace_request_ctx=timing) as resp:
                body = await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as exc:
            logger.debug("Ping %s failed: %r", url, exc)
            return UNREACHABLE

        elapsed = (time.perf_counter() - start) * 1000

        if body:
            logger.debug("Ping %s returned a non-empty body (%d bytes)", url, len(body))
            return UNREACHABLE

        if "sent" in timing and "response" in timing:
            precise = (timing["response"] - timing["sent"]) * 1000
            if 0 < precise < elapsed:
                elapsed = precise

        return elapsed

    # -- Per-server best ----------------------------------------------------

    async def probe_server_best(self, candidate: ServerCandidate) -> float:
        """
        Ping *candidate* up to ``max_attempts`` times, keeping the minimum.

        Stops early after a failed ping or one at or above
        ``slow_threshold_ms``.  Servers whose base URL is not on ``scheme``
        are not pinged at all and stay unreachable.
        """
        candidate.best_latency_ms = UNREACHABLE
        server = candidate.server

        if not server.server.startswith(f"{self.scheme}:"):
            logger.debug(
                "Skipping %s: %s is not served over %s",
                server.name, server.server, self.scheme,
            )
            return UNREACHABLE

        for _ in range(self.max_attempts):
            latency = await self.probe(server.ping_endpoint)
            if latency < 0:
                break
            if candidate.best_latency_ms == UNREACHABLE or latency < candidate.best_latency_ms:
                candidate.best_latency_ms = latency
            if latency >= self.slow_threshold_ms:
                break

        return candidate.best_latency_ms
