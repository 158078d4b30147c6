"""Correlation fields carried by every log record.

Fields live in a ``ContextVar`` so those bound while a worker holds a step
follow that step's coroutine and never leak into the next claim.
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Mapping

_FIELDS: ContextVar[dict[str, str]] = ContextVar("opsloop_log_fields", default={})


def _merged(values: Mapping[str, object]) -> dict[str, str]:
    merged = dict(_FIELDS.get())
    merged.update({str(key): str(value) for key, value in values.items() if value is not None})
    return merged


def get_context() -> dict[str, str]:
    """Return a copy of the fields bound in the current context."""
    return dict(_FIELDS.get())


def bind_process_fields(values: Mapping[str, object]) -> None:
    """Bind fields such as service and worker id for the rest of the process."""
    _FIELDS.set(_merged(values))


@contextmanager
def log_context(values: Mapping[str, object]) -> Iterator[None]:
    """Bind step, mission or run fields for the duration of a block.

    ``None`` values are skipped; everything else is stringified.
    """
    token = _FIELDS.set(_merged(values))
    try:
        yield
    finally:
        _FIELDS.reset(token)
