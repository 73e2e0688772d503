"""Core helpers: lightweight re-exports only."""

from antnode.core.logging import attach_windows_event_log, setup_logging

__all__ = ["attach_windows_event_log", "setup_logging"]
