from __future__ import annotations

import dataclasses
from typing import Optional

from ..models import Ack, Batch
from ..router.types import Sink
from ..wire import sorted_by_timestamp


class TimestampOrderedSink:
    """Wrap a sink that requires strictly increasing timestamps within a put.

    Buffers keep arrival order; concurrent producers can interleave
    timestamps, so this re-sorts each batch (stable) before delegating.
    """

    def __init__(self, inner: Sink):
        self.inner = inner

    async def put(self, batch: Batch) -> Optional[Ack]:
        ordered = dataclasses.replace(batch, records=tuple(sorted_by_timestamp(batch.records)))
        return await self.inner.put(ordered)
