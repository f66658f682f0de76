"""UI layer -- Rich dashboard for speed test runs."""

from .dashboard import (
    PhaseProgress,
    console,
    format_snapshot_line,
    print_final_results,
    print_header,
    print_selected_server,
)

__all__ = [
    "PhaseProgress",
    "console",
    "format_snapshot_line",
    "print_final_results",
    "print_header",
    "print_selected_server",
]
