"""Interactive query feed."""

from sql_profiler.tui.app import SqlProfilerApp, run_tui

__all__ = ["SqlProfilerApp", "run_tui"]
