"""Live query profiler for SQL Server."""
