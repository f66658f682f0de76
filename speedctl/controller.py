"""
Speed test controller.

The controller is a finite state machine driving one background worker::

    CONFIGURING -> ADDING_SERVERS -> SERVER_SELECTED -> RUNNING -> DONE
    CONFIGURING -------------------------------------> RUNNING

* CONFIGURING: change worker settings with ``configure``.  ``start`` goes
  straight to RUNNING; ``add_server``/``load_server_list`` go to
  ADDING_SERVERS.
* ADDING_SERVERS: register candidate servers, then ``select_best_server``
  (or ``set_selected_server``) to reach SERVER_SELECTED.
* SERVER_SELECTED: ``start`` derives the worker URLs from the server.
* RUNNING: ``on_update`` fires for every distinct status snapshot; ``abort``
  asks the worker to stop.
* DONE: ``on_complete(was_aborted)`` has fired once; ``start`` runs again.

The worker is reached only by messages.  ``worker_factory(reply)`` must
return an object with ``post_message(str)`` and ``terminate()``; the worker
answers ``"status"`` requests by calling ``reply`` with a JSON snapshot.
"""
from __future__ import annotations

import asyncio
import functools
import json
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

import aiohttp

from .catalog import ServerCatalog
from .constants import (
    COMMON_HEADERS,
    DEFAULT_SCHEME,
    MULTI_SERVER,
    PING_ATTEMPTS,
    PING_TIMEOUT_MS,
    POLL_INTERVAL,
    SELECTION_CONCURRENCY,
    SERVER_LIST_TIMEOUT,
    SLOW_THRESHOLD_MS,
    TELEMETRY_EXTRA,
)
from .errors import InvalidStateTransition
from .probe import LatencyProbe
from .selector import ServerSelector
from .servers import ServerDefinition, ServerLike
from .snapshot import StatusSnapshot
from .state import RunState, TestPhase
from .worker import TransferWorker

logger = logging.getLogger(__name__)

ReplyCallback = Callable[[str], None]
WorkerFactory = Callable[[ReplyCallback], Any]

_UNSET = object()


class SpeedtestController:
    """Owns the configuration, selected server, and worker of one test run."""

    def __init__(
        self,
        worker_factory: Optional[WorkerFactory] = None,
        *,
        scheme: str = DEFAULT_SCHEME,
        poll_interval: float = POLL_INTERVAL,
        selection_concurrency: int = SELECTION_CONCURRENCY,
        ping_attempts: int = PING_ATTEMPTS,
        slow_threshold_ms: float = SLOW_THRESHOLD_MS,
        ping_timeout_ms: Optional[float] = PING_TIMEOUT_MS,
        probe_factory: Optional[Callable[[], LatencyProbe]] = None,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if selection_concurrency < 1:
            raise ValueError("selection_concurrency must be at least 1")

        self._worker_factory = worker_factory or TransferWorker
        self._probe_factory = probe_factory or functools.partial(
            LatencyProbe,
            scheme=scheme,
            max_attempts=ping_attempts,
            slow_threshold_ms=slow_threshold_ms,
            timeout_ms=ping_timeout_ms,
        )
        self.scheme = scheme
        self.poll_interval = poll_interval
        self.selection_concurrency = selection_concurrency
        self.catalog = ServerCatalog(scheme)

        self.on_update: Optional[Callable[[StatusSnapshot], None]] = None
        self.on_complete: Optional[Callable[[bool], None]] = None

        self._state = RunState.CONFIGURING
        self._settings: Dict[str, Any] = {}
        self._original_extra: Any = _UNSET
        self._selected: Optional[ServerDefinition] = None
        self._select_called = False

        self._worker: Any = None
        self._generation = 0
        self._poller: Optional[asyncio.Task] = None
        self._prev_data: Optional[str] = None
        self._done: Optional[asyncio.Future] = None

    # -- Introspection ------------------------------------------------------

    @property
    def state(self) -> RunState:
        return self._state

    def get_state(self) -> RunState:
        return self._state

    @property
    def settings(self) -> Dict[str, Any]:
        """Copy of the configuration the worker will receive."""
        return dict(self._settings)

    # -- Configuration ------------------------------------------------------

    def configure(self, parameter: str, value: Any) -> None:
        """Set a worker setting.  Unknown settings are ignored by the worker."""
        if self._state == RunState.RUNNING:
            raise InvalidStateTransition(
                "You cannot change the test settings while running the test"
            )
        if not isinstance(parameter, str):
            raise TypeError("parameter name must be a string")

        self._settings[parameter] = value
        if parameter == TELEMETRY_EXTRA:
            self._original_extra = value

    # -- Server catalog -----------------------------------------------------

    def _begin_adding_servers(self) -> None:
        if self._state == RunState.CONFIGURING:
            self._state = RunState.ADDING_SERVERS
        if self._state == RunState.SERVER_SELECTED:
            raise InvalidStateTransition("You can't add a server after server selection")
        if self._state == RunState.RUNNING:
            raise InvalidStateTransition("You can't add a server while the test is running")
        if self._state == RunState.DONE:
            raise InvalidStateTransition("You can't add a server after the test has finished")
        self._settings[MULTI_SERVER] = True

    def add_server(self, server: ServerLike) -> ServerDefinition:
        """Validate and register one candidate server."""
        server = self.catalog.validate(server)
        self._begin_adding_servers()
        return self.catalog.add(server)

    def add_servers(self, servers: Iterable[ServerLike]) -> List[ServerDefinition]:
        """Register servers in order; the first invalid one stops the rest."""
        return [self.add_server(s) for s in servers]

    async def load_server_list(
        self,
        url: str,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> Optional[List[ServerDefinition]]:
        """
        Fetch a JSON server list and register every entry.

        Resolves to ``None`` if the list cannot be fetched or any entry is
        invalid; nothing is registered in that case.
        """
        self._begin_adding_servers()

        if session is None:
            timeout = aiohttp.ClientTimeout(total=SERVER_LIST_TIMEOUT)
            async with aiohttp.ClientSession(headers=COMMON_HEADERS, timeout=timeout) as own:
                servers = await self.catalog.fetch(url, own)
        else:
            servers = await self.catalog.fetch(url, session)

        if servers is None:
            return None

        self.add_servers(servers)
        logger.info("Loaded %d servers from %s", len(servers), url)
        return servers

    # -- Selection ----------------------------------------------------------

    async def select_best_server(self) -> Optional[ServerDefinition]:
        """
        Ping every registered server and select the fastest.

        May be called once per controller.  Resolves to ``None`` when no
        server answered, leaving the controller in ADDING_SERVERS.
        """
        if self._state != RunState.ADDING_SERVERS:
            if self._state == RunState.CONFIGURING:
                raise InvalidStateTransition("No test points added")
            if self._state == RunState.SERVER_SELECTED:
                raise InvalidStateTransition("Server already selected")
            raise InvalidStateTransition("You can't select a server while the test is running")
        if self._select_called:
            raise InvalidStateTransition("Server selection already called")
        self._select_called = True

        async with self._probe_factory() as probe:
            selector = ServerSelector(probe, concurrency=self.selection_concurrency)
            best = await selector.select(self.catalog.servers)

        if best is not None and self._state == RunState.ADDING_SERVERS:
            self._selected = best
            self._state = RunState.SERVER_SELECTED
        return best

    def set_selected_server(self, server: ServerLike) -> ServerDefinition:
        """Select a server by hand, skipping latency-based selection."""
        server = self.catalog.validate(server)
        if self._state == RunState.RUNNING:
            raise InvalidStateTransition("You can't select a server while the test is running")
        self._selected = server
        self._state = RunState.SERVER_SELECTED
        return server

    def get_selected_server(self) -> ServerDefinition:
        if self._state < RunState.SERVER_SELECTED or self._selected is None:
            raise InvalidStateTransition("No server is selected")
        return self._selected

    # -- Run control --------------------------------------------------------

    def _apply_selected_server(self) -> None:
        server = self._selected
        self._settings["url_dl"] = server.download_url
        self._settings["url_ul"] = server.upload_url
        self._settings["url_ping"] = server.ping_endpoint
        self._settings["url_getIp"] = server.get_ip_endpoint

        extra: Dict[str, Any] = {"server": server.name}
        if self._original_extra is not _UNSET:
            extra["extra"] = self._original_extra
        self._settings[TELEMETRY_EXTRA] = json.dumps(extra)

    def start(self) -> None:
        """
        Start the test.  Must be called from a running event loop.

        Returns immediately; progress arrives through ``on_update`` and the
        end of the run through ``on_complete`` (or ``await wait()``).
        """
        if self._state == RunState.RUNNING:
            raise InvalidStateTransition("Test already running")
        if self._state == RunState.ADDING_SERVERS:
            raise InvalidStateTransition(
                "When using multiple points of test, you must select a server "
                "before starting the test"
            )

        loop = asyncio.get_running_loop()

        if self._state == RunState.SERVER_SELECTED:
            self._apply_selected_server()
        payload = json.dumps(self._settings)

        self._generation += 1
        generation = self._generation
        worker = self._worker_factory(
            lambda data: self._handle_reply(generation, data)
        )

        self._worker = worker
        self._prev_data = None
        self._done = loop.create_future()
        self._state = RunState.RUNNING
        self._poller = loop.create_task(self._poll(worker))

        logger.debug("Starting test with settings %s", payload)
        worker.post_message("start " + payload)

    def abort(self) -> None:
        """Ask the worker to stop.  The run ends on its next status reply."""
        if self._state < RunState.RUNNING:
            raise InvalidStateTransition("You cannot abort a test that hasn't started yet")
        if self._state == RunState.DONE:
            raise InvalidStateTransition("You cannot abort a test that has already finished")
        logger.info("Aborting test")
        self._worker.post_message("abort")

    async def wait(self) -> bool:
        """Wait for the current run to end.  Returns ``True`` if it was aborted."""
        if self._done is None:
            raise InvalidStateTransition("No test has been started")
        return await asyncio.shield(self._done)

    # -- Progress channel ---------------------------------------------------

    async def _poll(self, worker: Any) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            worker.post_message("status")

    def _handle_reply(self, generation: int, data: str) -> None:
        if generation != self._generation or self._state != RunState.RUNNING:
            return
        if data == self._prev_data:
            return
        self._prev_data = data

        try:
            snapshot = StatusSnapshot.from_json(data)
            phase = snapshot.phase
        except (TypeError, ValueError) as exc:
            logger.warning("Ignoring malformed status from worker: %s", exc)
            return

        if self.on_update:
            try:
                self.on_update(snapshot)
            except Exception:
                logger.exception("on_update callback raised")

        if phase.is_terminal:
            self._finish(phase == TestPhase.ABORTED)

    def _finish(self, aborted: bool) -> None:
        if self._poller is not None:
            self._poller.cancel()
            self._poller = None

        self._state = RunState.DONE
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.terminate()

        if self._done is not None and not self._done.done():
            self._done.set_result(aborted)

        logger.info("Test %s", "aborted" if aborted else "finished")
        if self.on_complete:
            try:
                self.on_complete(aborted)
            except Exception:
                logger.exception("on_complete callback raised")
