"""structlog rendering for the cloud controller's stdlib loggers.

Lifecycle modules log through ``logging.getLogger(__name__)`` and pass
resource guids via ``extra=``. ``configure_logging`` installs a single root
handler whose ``ProcessorFormatter`` lifts those guids into the event,
merges the request id bound by ``request_context``, and renders JSON lines
(or console output for local runs).

Usage::

    from cloud_controller.app.observability import configure_logging

    configure_logging(settings)
    with request_context('req-123'):
        await ServiceInstanceDelete(...).delete(instances)
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import Iterator

import structlog

from ..settings import CloudControllerSettings

# ``extra=`` keys copied from stdlib records into the rendered event.
CONTEXT_KEYS = (
    'service_instance_guid',
    'binding_guid',
    'broker_guid',
    'actee_guid',
)

_NOISY_LOGGERS = ('httpx', 'httpcore')


def _processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.ExtraAdder(allow=CONTEXT_KEYS),
        structlog.processors.TimeStamper(fmt='iso', utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def configure_logging(
    settings: CloudControllerSettings | None = None,
    *,
    stream=None,
) -> logging.Handler:
    """Route all stdlib logging through structlog; return the new handler.

    Replaces any handlers already on the root logger, so calling it again
    (for example after reloading settings) is safe.
    """
    settings = settings or CloudControllerSettings()
    if settings.log_format == 'json':
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    shared = _processors()
    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return handler


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def request_context(request_id: str | None) -> Iterator[None]:
    """Tag every log line emitted inside the block with ``request_id``."""
    if not request_id:
        yield
        return
    with structlog.contextvars.bound_contextvars(request_id=request_id):
        yield
