"""Request-scoped logging context.

Fields bound here are merged into every event by
``structlog.contextvars.merge_contextvars``, which ``setup_logging`` puts first
in the processor chain.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog


@contextmanager
def request_log_context(**fields: Any) -> Iterator[None]:
    """Bind ``fields`` while handling one request.

    Each request runs in its own task, which owns a copy of the context, so
    concurrent requests never see each other's fields.
    """
    tokens = structlog.contextvars.bind_contextvars(**fields)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)
