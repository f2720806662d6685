"""Delegate queued natural-language tasks to external AI CLI agents."""

__version__ = "0.1.0"
