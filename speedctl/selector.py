"""
Lowest-latency server selection.

The catalog is split round-robin into ``concurrency`` lanes.  Lanes run
concurrently; inside a lane candidates are probed one after the other, so at
most ``concurrency`` servers are being pinged at any moment.  Each lane
reduces to its own best candidate and the lane winners are reduced the same
way (lowest latency wins, unreachable never wins, first seen breaks ties),
which makes the result deterministic for deterministic latencies.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Iterable, List, Optional, Sequence

from .constants import SELECTION_CONCURRENCY
from .probe import LatencyProbe
from .servers import ServerCandidate, ServerDefinition

logger = logging.getLogger(__name__)


def partition(items: Sequence, concurrency: int) -> List[list]:
    """Deal *items* into *concurrency* lanes by index modulo lane count."""
    if concurrency < 1:
        raise ValueError("concurrency must be at least 1")
    lanes: List[list] = [[] for _ in range(concurrency)]
    for i, item in enumerate(items):
        lanes[i % concurrency].append(item)
    return lanes


def best_candidate(
    candidates: Iterable[Optional[ServerCandidate]],
) -> Optional[ServerCandidate]:
    """Reachable candidate with the lowest latency; earliest wins ties."""
    best: Optional[ServerCandidate] = None
    for candidate in candidates:
        if candidate is None or not candidate.reachable:
            continue
        if best is None or candidate.best_latency_ms < best.best_latency_ms:
            best = candidate
    return best


class ServerSelector:
    """Pick the lowest-latency server using a ``LatencyProbe``."""

    def __init__(
        self,
        probe: LatencyProbe,
        concurrency: int = SELECTION_CONCURRENCY,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.probe = probe
        self.concurrency = concurrency

    async def select(
        self,
        servers: Sequence[ServerDefinition],
    ) -> Optional[ServerDefinition]:
        """Return the best server, or ``None`` if none answered."""
        candidates = [ServerCandidate(server=s) for s in servers]
        lanes = partition(candidates, self.concurrency)

        winners = await asyncio.gather(*[self._run_lane(lane) for lane in lanes])
        best = best_candidate(winners)

        if best is None:
            logger.info("No server out of %d answered a ping", len(candidates))
            return None

        logger.info(
            "Selected %s (%.1f ms) out of %d servers",
            best.server.name, best.best_latency_ms, len(candidates),
        )
        return best.server

    async def _run_lane(
        self,
        lane: List[ServerCandidate],
    ) -> Optional[ServerCandidate]:
        for candidate in lane:
            await self.probe.probe_server_best(candidate)
            logger.debug(
                "Ping %s: %.1f ms", candidate.server.name, candidate.best_latency_ms
            )
        return best_candidate(lane)
