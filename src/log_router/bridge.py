"""
loguru → SinkRouter bridge.

Lets producers keep logging through loguru while the router receives the
records as Events:

    handler_id = install(router, level="INFO")
    logger.bind(app="order-service", request_id="r-1").error("payment declined")
    ...
    await logger.complete()   # wait for pending submits
    logger.remove(handler_id)

Records emitted by the router's own modules are filtered out so the router
never routes its own diagnostics.
"""

from __future__ import annotations

import traceback
from typing import Any, Dict, Optional, Union

from loguru import logger

from .errors import MalformedEvent, RouterClosed
from .models import Event, Severity
from .router.sink_router import SinkRouter

_LEVELS = {
    "TRACE": Severity.DEBUG,
    "DEBUG": Severity.DEBUG,
    "INFO": Severity.INFO,
    "SUCCESS": Severity.INFO,
    "WARNING": Severity.WARNING,
    "ERROR": Severity.ERROR,
    "CRITICAL": Severity.CRITICAL,
}


def severity_for(level_name: str, level_no: int) -> Severity:
    """Map a loguru level to a Severity; custom levels go by number."""
    if level_name in _LEVELS:
        return _LEVELS[level_name]
    for sev in sorted(Severity, reverse=True):
        if level_no >= sev.value:
            return sev
    return Severity.DEBUG


def record_to_event(record: Dict[str, Any], *, app: Optional[str] = None) -> Event:
    extra = dict(record["extra"])
    source = extra.pop("app", None) or app or record["name"] or ""
    exc = record["exception"]
    raw_exception = None
    if exc is not None and exc.type is not None:
        raw_exception = "".join(traceback.format_exception(exc.type, exc.value, exc.traceback))
    return Event(
        timestamp=record["time"],
        severity=severity_for(record["level"].name, record["level"].no),
        source=str(source),
        message=record["message"],
        attributes=extra,
        raw_exception=raw_exception,
    )


def _not_ours(record: Dict[str, Any]) -> bool:
    return not (record["name"] or "").startswith("log_router")


def install(router: SinkRouter, *, level: Union[str, int] = "DEBUG", app: Optional[str] = None) -> int:
    """Add a loguru handler that submits every record to ``router``.

    Must be called from the router's event loop; returns the loguru handler id.
    """

    async def _sink(message) -> None:
        try:
            await router.submit(record_to_event(message.record, app=app))
        except RouterClosed:
            logger.debug("router closed; log record not routed")
        except MalformedEvent as e:
            logger.warning(f"log record not routed: {e}")

    return logger.add(_sink, level=level, filter=_not_ours, format="{message}")
