"""
Candidate server catalog.

Holds the definitions registered on one controller.  Run-state bookkeeping
stays with the controller; the catalog only validates and stores.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Iterator, List, Optional

import aiohttp

from .constants import DEFAULT_SCHEME
from .errors import InvalidServerDefinition
from .servers import ServerDefinition, ServerLike, validate_server

logger = logging.getLogger(__name__)


class ServerCatalog:
    """Ordered list of validated server definitions."""

    def __init__(self, scheme: str = DEFAULT_SCHEME) -> None:
        self.scheme = scheme
        self._servers: List[ServerDefinition] = []

    def __len__(self) -> int:
        return len(self._servers)

    def __iter__(self) -> Iterator[ServerDefinition]:
        return iter(self._servers)

    @property
    def servers(self) -> List[ServerDefinition]:
        return list(self._servers)

    # -- Registration -------------------------------------------------------

    def validate(self, server: ServerLike) -> ServerDefinition:
        return validate_server(server, self.scheme)

    def add(self, server: ServerLike) -> ServerDefinition:
        server = self.validate(server)
        self._servers.append(server)
        return server

    # -- Remote lists -------------------------------------------------------

    async def fetch(
        self,
        url: str,
        session: aiohttp.ClientSession,
    ) -> Optional[List[ServerDefinition]]:
        """
        Download and validate a JSON server list without registering it.

        Returns ``None`` when the request fails, the payload is not a JSON
        array, or any element is not a valid definition.
        """
        try:
            async with session.get(url) as resp:
                resp.raise_for_status()
                text = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            logger.warning("Could not fetch server list %s: %s", url, exc)
            return None

        try:
            data = json.loads(text)
        except ValueError as exc:
            logger.warning("Server list %s is not valid JSON: %s", url, exc)
            return None

        if not isinstance(data, list):
            logger.warning("Server list %s is not a JSON array", url)
            return None

        try:
            return [self.validate(item) for item in data]
        except InvalidServerDefinition as exc:
            logger.warning("Server list %s rejected: %s", url, exc)
            return None
