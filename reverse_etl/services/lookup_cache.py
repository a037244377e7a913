"""Run-scoped cache of remote lookup indexes."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, Tuple

from reverse_etl.models.lookup import LookupIndex

logger = logging.getLogger(__name__)

IndexKey = Tuple[str, str]
IndexBuilder = Callable[[], Awaitable[LookupIndex]]


class RunLookupCache:
    """
    Lookup indexes for a single run, keyed by (table, field).

    One lock covers every read-or-build and every merge, so a value created
    by one worker is visible to the next worker that checks out the index.
    """

    def __init__(self, run_id: str):
        self.run_id = str(run_id)
        self._indexes: Dict[IndexKey, LookupIndex] = {}
        self._lock = asyncio.Lock()

    async def _get_or_build_locked(self, key: IndexKey, builder: IndexBuilder) -> LookupIndex:
        index = self._indexes.get(key)
        if index is None:
            logger.info(
                f"Building lookup index for table={key[0]} field={key[1]}",
                extra={"sync_run_id": self.run_id},
            )
            index = await builder()
            self._indexes[key] = index
            if not index.complete:
                logger.warning(
                    f"Lookup index for table={key[0]} field={key[1]} is partial; "
                    "unscanned values will be treated as new rows",
                    extra={"sync_run_id": self.run_id, "indexed_values": len(index)},
                )
        return index

    async def get_or_build(self, table: str, field: str, builder: IndexBuilder) -> LookupIndex:
        """Return the cached index, building it once if needed."""
        async with self._lock:
            return await self._get_or_build_locked((table, field), builder)

    @asynccontextmanager
    async def checkout(self, table: str, field: str, builder: IndexBuilder) -> AsyncIterator[LookupIndex]:
        """Hold the run lock while the caller classifies records and merges new ids."""
        async with self._lock:
            yield await self._get_or_build_locked((table, field), builder)

    def peek(self, table: str, field: str) -> Optional[LookupIndex]:
        return self._indexes.get((table, field))

    def __len__(self) -> int:
        return len(self._indexes)
