"""Structured stdout logging for opsloop processes.

One stdout handler per process, with ``contextvars``-based correlation
fields (worker, mission, step, run) appended to every record.
"""

from .config import configure_logging
from .context import get_context, log_context

__all__ = [
    "configure_logging",
    "get_context",
    "log_context",
]
