#!/usr/bin/env python3
"""
speedctl CLI -- run a LibreSpeed-compatible speed test from the terminal.

Usage::

    python speedtest.py --server-list https://example.net/servers.json
    python speedtest.py --server-file servers.json --simple
    python speedtest.py --url-base https://speed.example.net/backend/
    python speedtest.py --url-base //speed.example.net/ --set time_dl_max=5
    python speedtest.py --server-list URL --json     # JSON to stdout
    python speedtest.py --server-list URL --abort-after 3
    python speedtest.py --server-list URL --set time_ul_max=5 --save-config
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, List, Optional, Tuple

from speedctl.config import (
    config_path,
    controller_options,
    get_config_value,
    load_config,
    set_config_value,
)
from speedctl.controller import SpeedtestController, WorkerFactory
from speedctl.errors import SpeedctlError
from speedctl.log import setup_logging
from speedctl.servers import ServerDefinition
from speedctl.snapshot import StatusSnapshot
from speedctl.state import RunState
from ui.dashboard import (
    PhaseProgress,
    console,
    format_snapshot_line,
    print_final_results,
    print_header,
    print_selected_server,
)

# LibreSpeed backend layout used with --url-base
_DEFAULT_PATHS = {
    "dlURL": "garbage.php",
    "ulURL": "empty.php",
    "pingURL": "empty.php",
    "getIpURL": "getIP.php",
}


# ---------------------------------------------------------------------------
# Argument helpers
# ---------------------------------------------------------------------------

def _parse_setting(text: str) -> Tuple[str, Any]:
    """Split ``KEY=VALUE``; the value is decoded as JSON when possible."""
    key, sep, raw = text.partition("=")
    key = key.strip()
    if not sep or not key:
        raise ValueError(f"Expected KEY=VALUE, got {text!r}")
    try:
        value = json.loads(raw)
    except ValueError:
        value = raw
    return key, value


def _validate(
    server_list: Optional[str],
    server_file: Optional[str],
    url_base: Optional[str],
    abort_after: Optional[float],
) -> None:
    """Raise ``ValueError`` for conflicting or out-of-range options."""
    sources = [s for s in (server_list, server_file, url_base) if s]
    if len(sources) > 1:
        raise ValueError("Use only one of --server-list, --server-file and --url-base")
    if abort_after is not None and abort_after < 0:
        raise ValueError("--abort-after must be zero or positive")


def _load_server_file(path: str) -> List[Dict[str, Any]]:
    with open(path, encoding="utf-8") as fh:
        data = json.load(fh)
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a JSON array of servers")
    return data


def _save_defaults(
    server_list: Optional[str],
    scheme: Optional[str],
    settings: Dict[str, Any],
) -> str:
    """Store the given options in the config file.  Returns its path."""
    if server_list:
        set_config_value("server_list", server_list)
    if scheme:
        set_config_value("scheme", scheme)
    if settings:
        stored = dict(get_config_value("settings"))
        stored.update(settings)
        set_config_value("settings", stored)
    return config_path()


# ---------------------------------------------------------------------------
# Core test runner
# ---------------------------------------------------------------------------

async def run_speedtest(
    *,
    server_list: Optional[str] = None,
    server_file: Optional[str] = None,
    url_base: Optional[str] = None,
    settings: Optional[Dict[str, Any]] = None,
    options: Optional[Dict[str, Any]] = None,
    abort_after: Optional[float] = None,
    json_output: bool = False,
    simple: bool = False,
    worker_factory: Optional[WorkerFactory] = None,
) -> Optional[dict]:
    """Select a server, run one test, and return a JSON-serialisable dict."""

    show_ui = not json_output and not simple

    if show_ui:
        print_header()

    controller = SpeedtestController(worker_factory, **(options or {}))
    for key, value in (settings or {}).items():
        controller.configure(key, value)

    # -- Server ---------------------------------------------------------------
    server: Optional[ServerDefinition] = None

    if url_base:
        server = controller.set_selected_server(
            dict(_DEFAULT_PATHS, name=url_base, server=url_base)
        )
        if show_ui:
            print_selected_server(server, how="--url-base")

    elif server_list or server_file:
        if server_list:
            if show_ui:
                console.print("[dim]Fetching server list...[/dim]")
            if await controller.load_server_list(server_list) is None:
                console.print(f"[red]Error: Could not load server list from {server_list}[/red]")
                return None
        else:
            controller.add_servers(_load_server_file(server_file))

        if show_ui:
            console.print(f"[dim]Pinging {len(controller.catalog)} servers...[/dim]")
        server = await controller.select_best_server()
        if server is None:
            console.print("[red]Error: Could not reach any server[/red]")
            return None
        if show_ui:
            print_selected_server(server)

    # -- Run ------------------------------------------------------------------
    last: List[StatusSnapshot] = []
    progress = PhaseProgress() if show_ui else None

    def _on_update(snapshot: StatusSnapshot) -> None:
        last[:] = [snapshot]
        if progress:
            progress.update(snapshot)
        elif simple:
            print(format_snapshot_line(snapshot))

    controller.on_update = _on_update

    if progress:
        progress.start()

    controller.start()

    if abort_after is not None:
        def _abort() -> None:
            if controller.state == RunState.RUNNING:
                controller.abort()

        asyncio.get_running_loop().call_later(abort_after, _abort)

    try:
        aborted = await controller.wait()
    finally:
        if progress:
            progress.stop()

    final = last[0] if last else StatusSnapshot()
    result = {
        "aborted": aborted,
        "server": server.to_dict() if server else None,
        "result": final.to_dict(),
    }

    # -- Output ---------------------------------------------------------------
    if json_output:
        print(json.dumps(result, indent=2))
    elif aborted:
        console.print("[yellow]Test aborted[/yellow]")
    elif show_ui:
        print_final_results(final, server.name if server else "")
    else:
        print(f"Ping: {final.ping_status:.1f} ms (jitter {final.jitter_status:.2f} ms)")
        print(f"Download: {final.dl_status:.2f} Mbps")
        print(f"Upload: {final.ul_status:.2f} Mbps")

    return result


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main() -> None:
    parser = argparse.ArgumentParser(
        description="speedctl -- LibreSpeed-compatible network speed testing",
    )
    # Server selection
    parser.add_argument("--server-list", type=str, metavar="URL", help="Load candidate servers from a JSON list URL")
    parser.add_argument("--server-file", type=str, metavar="FILE", help="Load candidate servers from a local JSON file")
    parser.add_argument("--url-base", type=str, metavar="URL", help="Use a single LibreSpeed backend at this base URL")
    parser.add_argument("--scheme", type=str, metavar="SCHEME", help="Scheme servers must be reachable over (default: https)")

    # Test parameters
    parser.add_argument("--set", action="append", default=[], metavar="KEY=VALUE", help="Worker setting, e.g. time_dl_max=5 (repeatable)")
    parser.add_argument("--abort-after", type=float, metavar="SECS", help="Abort the test after this many seconds")

    # Output modes
    parser.add_argument("--json", "-j", action="store_true", help="Output results as JSON")
    parser.add_argument("--simple", "-s", action="store_true", help="Simple output mode (no dashboard)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log debug output to stderr")
    parser.add_argument("--save-config", action="store_true", help="Save --server-list, --scheme and --set as defaults, then exit")

    args = parser.parse_args()

    setup_logging("DEBUG" if args.verbose else "WARNING")

    if args.save_config:
        try:
            path = _save_defaults(
                args.server_list, args.scheme, dict(_parse_setting(s) for s in args.set)
            )
        except (ValueError, OSError) as exc:
            console.print(f"[red]Error: {exc}[/red]")
            sys.exit(1)
        console.print(f"[green]Saved defaults to {path}[/green]")
        return

    config = load_config()

    try:
        _validate(args.server_list, args.server_file, args.url_base, args.abort_after)
        settings = dict(config["settings"])
        settings.update(_parse_setting(s) for s in args.set)
        options = controller_options(config)
    except (ValueError, TypeError) as exc:
        console.print(f"[red]Error: {exc}[/red]")
        sys.exit(1)

    if args.scheme:
        options["scheme"] = args.scheme

    server_list = args.server_list
    if not (server_list or args.server_file or args.url_base):
        server_list = config["server_list"] or None

    try:
        result = asyncio.run(
            run_speedtest(
                server_list=server_list,
                server_file=args.server_file,
                url_base=args.url_base,
                settings=settings,
                options=options,
                abort_after=args.abort_after,
                json_output=args.json,
                simple=args.simple,
            )
        )
    except KeyboardInterrupt:
        console.print("\n[yellow]Test cancelled by user[/yellow]")
        sys.exit(1)
    except (SpeedctlError, OSError, ValueError) as exc:
        console.print(f"\n[red]Error: {exc}[/red]")
        sys.exit(1)

    if result is None:
        sys.exit(1)


if __name__ == "__main__":
    main()
