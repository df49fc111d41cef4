"""
Exceptions for the log router.

Producers only ever see MalformedEvent and RouterClosed. Sink failures are
retried or surfaced to the router's owner as DeliveryFailed.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Optional, Tuple

if TYPE_CHECKING:
    from .models import Batch


class LogRouterError(Exception):
    """Base error for the log router."""

    pass


class MalformedEvent(LogRouterError):
    """Event failed validation; it was rejected and never buffered."""

    pass


class RouterClosed(LogRouterError):
    """Submit attempted after shutdown began.

    ``appended`` lists destinations that had already accepted the event when a
    fan-out was cut short by shutdown; it is empty for an outright rejection.
    """

    def __init__(self, message: str = "", *, appended: Tuple[str, ...] = ()):
        super().__init__(message)
        self.appended = tuple(appended)


class SinkError(LogRouterError):
    """Delivery error raised by a sink.

    ``transient`` errors (network, timeout, throttling) are retried;
    permanent ones (bad payload, authorization, missing destination) are not.
    """

    def __init__(self, message: str = "", *, transient: bool = False):
        super().__init__(message)
        self.transient = transient


class TransientSinkError(SinkError):
    def __init__(self, message: str = ""):
        super().__init__(message, transient=True)


class PermanentSinkError(SinkError):
    def __init__(self, message: str = ""):
        super().__init__(message, transient=False)


class DeliveryFailed(LogRouterError):
    """Terminal delivery failure: permanent error or retries exhausted."""

    def __init__(
        self,
        destination_id: str,
        batch_id: str,
        batch_size: int,
        attempts: int,
        last_error: Optional[BaseException],
        batch: Optional["Batch"] = None,
    ):
        self.destination_id = destination_id
        self.batch_id = batch_id
        self.batch_size = batch_size
        self.attempts = attempts
        self.last_error = last_error
        self.batch = batch
        super().__init__(
            f"delivery to {destination_id!r} failed after {attempts} attempt(s) "
            f"(batch={batch_id}, events={batch_size}): {last_error!r}"
        )

    @property
    def transient(self) -> bool:
        """True when retries were exhausted on a transient error."""
        return isinstance(self.last_error, SinkError) and self.last_error.transient


def map_sink_error(e: BaseException, classify_transient: Callable[[BaseException], bool]) -> SinkError:
    if isinstance(e, SinkError):
        return e
    err = SinkError(f"{type(e).__name__}: {e}", transient=classify_transient(e))
    err.__cause__ = e
    return err
