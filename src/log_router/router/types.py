from __future__ import annotations

from typing import Awaitable, Callable, Optional, Protocol, runtime_checkable

from ..errors import DeliveryFailed
from ..models import Ack, Batch, Event


@runtime_checkable
class Sink(Protocol):
    """Destination capable of accepting a batch of events.

    ``put`` raises SinkError (or any exception, classified by the retry
    policy) on failure. Returning None counts as success.
    """

    async def put(self, batch: Batch) -> Optional[Ack]: ...


FailureCallback = Callable[[DeliveryFailed], Awaitable[None]]
DropCallback = Callable[[str, Event], Awaitable[None]]
