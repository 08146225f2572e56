import asyncio
import logging
from datetime import datetime
from typing import Dict, Iterable, Optional

from transfer_indexer.retry import RetryPolicy

log = logging.getLogger(__name__)


class BlockTimestampCache:
    """
    block number -> UTC datetime, memoized for one chunk.

    The orchestrator calls clear() after every chunk so the cache never grows
    past one chunk's distinct blocks.
    """

    def __init__(self, client, retry: Optional[RetryPolicy] = None, concurrency: int = 10):
        self.client = client
        self.retry = retry or RetryPolicy()
        self.concurrency = concurrency
        self._cache: Dict[int, datetime] = {}

    def __len__(self):
        return len(self._cache)

    async def timestamp_of(self, block_number: int) -> datetime:
        ts = self._cache.get(block_number)
        if ts is None:
            ts = await self.retry.run(
                lambda: self.client.get_block_timestamp(block_number),
                label=f"{self.client.name} getBlock {block_number}",
            )
            self._cache[block_number] = ts
        return ts

    async def resolve(self, block_numbers: Iterable[int]) -> Dict[int, datetime]:
        """Warm the cache for every distinct block, at most `concurrency` requests in flight."""
        distinct = sorted(set(block_numbers))
        sem = asyncio.Semaphore(self.concurrency)

        async def one(n):
            async with sem:
                await self.timestamp_of(n)

        tasks = [asyncio.create_task(one(n)) for n in distinct if n not in self._cache]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            # no lookup may outlive the chunk and write into a cleared cache
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        if tasks:
            log.debug(f"[{self.client.name}] resolved {len(tasks)} block timestamps")
        return {n: self._cache[n] for n in distinct}

    def clear(self):
        self._cache.clear()
