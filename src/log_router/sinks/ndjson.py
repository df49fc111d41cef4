"""
Partitioned NDJSON archive sink.

Writes each batch as one file per partition key:

    <root>/<app>/<YYYY>/<MM>/<DD>[/<HH>]/<batch_id>.ndjson

Files are named by batch id and written via rename, so a retried batch
overwrites its own output instead of duplicating it.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import List, Optional, Union

from loguru import logger

from ..classify import DEFAULT_APP
from ..errors import PermanentSinkError, TransientSinkError
from ..models import Ack, Batch
from ..wire import to_ndjson


class NDJSONArchiveSink:
    def __init__(self, root: Union[str, Path], *, default_app: str = DEFAULT_APP):
        self.root = Path(root)
        self.default_app = default_app

    async def put(self, batch: Batch) -> Optional[Ack]:
        try:
            paths = await asyncio.to_thread(self._write, batch)
        except PermissionError as e:
            raise PermanentSinkError(f"archive not writable: {e}") from e
        except OSError as e:
            raise TransientSinkError(f"archive write failed: {e}") from e
        logger.debug(f"[{batch.destination_id}] archived {len(batch)} events into {len(paths)} file(s)")
        return Ack(batch.destination_id, batch.batch_id, len(batch))

    def _write(self, batch: Batch) -> List[Path]:
        written = []
        for key, records in batch.by_partition().items():
            directory = self.root / key.path
            directory.mkdir(parents=True, exist_ok=True)
            target = directory / f"{batch.batch_id}.ndjson"
            tmp = target.with_suffix(".ndjson.tmp")
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(to_ndjson((r.event for r in records), default_app=self.default_app))
            os.replace(tmp, target)
            written.append(target)
        return written
