import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence

from transfer_indexer.config import ERC20_TRANSFER_TOPIC0, ChainSpec, Settings
from transfer_indexer.db import CheckpointStore, TransferSink
from transfer_indexer.errors import ChunkError, IndexerError, NormalizationError
from transfer_indexer.fetcher import fetch_logs
from transfer_indexer.helpers import decode_transfer_log
from transfer_indexer.models import BlockRange, LogEvent, TransferRecord
from transfer_indexer.normalizer import normalize
from transfer_indexer.retry import RetryPolicy
from transfer_indexer.timestamps import BlockTimestampCache

log = logging.getLogger(__name__)


class Phase(str, Enum):
    IDLE                 = "idle"
    SCANNING_CHAIN       = "scanning_chain"
    FETCHING_CHUNK       = "fetching_chunk"
    RESOLVING_TIMESTAMPS = "resolving_timestamps"
    NORMALIZING          = "normalizing"
    PERSISTING           = "persisting"
    CHECKPOINTING        = "checkpointing"


@dataclass
class ChainResult:
    chain: str
    chunks: int = 0
    logs: int = 0
    records: int = 0
    skipped: int = 0
    checkpoint: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def scan_window(head: int, checkpoint: Optional[int], start_block: Optional[int],
                window: int) -> Optional[BlockRange]:
    """
    Blocks still to index, or None when there is nothing to do.

    checkpoint wins over an explicit start block; with neither, the last
    `window` blocks up to head are scanned.
    """
    if head < 0:
        return None
    if checkpoint is not None:
        start = checkpoint + 1
    elif start_block is not None:
        start = start_block
    else:
        start = max(head - window + 1, 0)
    if start > head:
        return None
    return BlockRange(start, head)


@dataclass
class ChainBackfill:
    """Sequential chunk loop for one chain: fetch -> timestamps -> normalize -> persist -> checkpoint."""

    spec: ChainSpec
    client: object
    sink: TransferSink
    checkpoints: CheckpointStore
    chunk_size: int = 1000
    backfill_blocks: int = 5000
    confirms: int = 0
    addresses: Sequence[str] = ()
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    timestamp_conc: int = 10
    topic0: str = ERC20_TRANSFER_TOPIC0

    def __post_init__(self):
        self.name = self.spec.name
        self.phase = Phase.IDLE
        self.result = ChainResult(self.name, checkpoint=self.checkpoints.get(self.name))
        self.timestamps = BlockTimestampCache(self.client, self.retry, self.timestamp_conc)

    def _enter(self, phase: Phase):
        self.phase = phase
        log.debug(f"[{self.name}] -> {phase.value}")

    async def safe_head(self) -> int:
        latest = await self.retry.run(self.client.latest_block, label=f"{self.name} blockNumber")
        return latest - self.confirms

    def _skip(self, e: NormalizationError):
        log.warning(f"[{self.name}] skipping log: {e}")

    async def process_chunk(self, rng: BlockRange) -> int:
        """Index one chunk and advance the checkpoint to rng.to_block; returns records written."""
        try:
            self._enter(Phase.FETCHING_CHUNK)
            raw = await fetch_logs(self.client, rng, self.topic0, self.addresses, self.retry)
            events: List[LogEvent] = []
            skipped = 0
            for lg in raw:
                try:
                    events.append(decode_transfer_log(lg))
                except NormalizationError as e:
                    skipped += 1
                    self._skip(e)

            self._enter(Phase.RESOLVING_TIMESTAMPS)
            times = await self.timestamps.resolve(ev.block_number for ev in events)

            self._enter(Phase.NORMALIZING)
            records: List[TransferRecord] = []
            for ev in sorted(events, key=lambda x: (x.block_number, x.log_index)):
                try:
                    records.append(normalize(ev, times[ev.block_number], self.name))
                except NormalizationError as e:
                    skipped += 1
                    self._skip(e)

            self._enter(Phase.PERSISTING)
            written = self.sink.persist_chunk(records)

            self._enter(Phase.CHECKPOINTING)
            self.checkpoints.set(self.name, rng.to_block)
        except IndexerError as e:
            raise ChunkError(self.name, rng, e) from e
        finally:
            self.timestamps.clear()

        self.result.chunks += 1
        self.result.logs += len(raw)
        self.result.records += written
        self.result.skipped += skipped
        self.result.checkpoint = rng.to_block
        log.info(f"[{self.name}] {rng} ({len(raw)} logs, {written} records"
                 + (f", {skipped} skipped)" if skipped else ")"))
        return written

    async def run(self) -> ChainResult:
        self._enter(Phase.SCANNING_CHAIN)
        head = await self.safe_head()
        window = scan_window(head, self.checkpoints.get(self.name), self.spec.start_block,
                             self.backfill_blocks)
        if window is None:
            log.info(f"[{self.name}] up to date (head {head}, checkpoint {self.result.checkpoint})")
            self._enter(Phase.IDLE)
            return self.result

        log.info(f"[{self.name}] scanning {window} ({window.size} blocks)")
        from_block = window.from_block
        while from_block <= head:
            to_block = min(from_block + self.chunk_size - 1, head)
            if to_block == head:
                # blocks produced during a long backfill must not be left behind
                new_head = await self.safe_head()
                if new_head > head:
                    log.info(f"[{self.name}] head moved {head} -> {new_head}")
                    head = new_head
                    to_block = min(from_block + self.chunk_size - 1, head)
            await self.process_chunk(BlockRange(from_block, to_block))
            from_block = to_block + 1

        log.info(f"[{self.name}] done. checkpoint at {self.result.checkpoint}")
        self._enter(Phase.IDLE)
        return self.result

    async def follow(self, poll_interval: float, slot=None, keep_going: bool = True) -> ChainResult:
        """
        Backfill, then keep indexing new blocks until cancelled.

        `slot` (e.g. the shared chain semaphore) is held for each pass only, never
        across the sleep. With keep_going a failed pass is logged and retried on
        the next poll; the checkpoint makes the retry resume at the failed chunk.
        """
        if slot is None:
            slot = contextlib.nullcontext()
        while True:
            try:
                async with slot:
                    await self.run()
                self.result.error = None
            except IndexerError as e:
                if not keep_going:
                    raise
                self.result.error = str(e)
                log.error(f"[{self.name}] pass failed in {self.phase.value}: {e}; retrying in {poll_interval}s")
                self._enter(Phase.IDLE)
            await asyncio.sleep(poll_interval)


def build_jobs(settings: Settings, clients: Dict[str, object], sink: TransferSink,
               checkpoints: CheckpointStore) -> List[ChainBackfill]:
    retry = RetryPolicy(settings.retry_attempts, settings.retry_delay)
    return [
        ChainBackfill(
            spec=spec,
            client=clients[spec.name],
            sink=sink,
            checkpoints=checkpoints,
            chunk_size=settings.chunk_size,
            backfill_blocks=settings.backfill_blocks,
            confirms=settings.confirms,
            addresses=settings.watch_addresses,
            retry=retry,
            timestamp_conc=settings.timestamp_conc,
        )
        for spec in settings.chains
    ]


async def run_backfill(jobs: Sequence[ChainBackfill], chain_conc: int = 4,
                       isolate: bool = True, follow: bool = False,
                       poll_interval: float = 12.0) -> List[ChainResult]:
    """
    Run every chain job, at most `chain_conc` at a time.

    isolate=True: a failing chain is recorded in its ChainResult and the others
    carry on. isolate=False: the first failure cancels the remaining chains and
    propagates.
    """
    sem = asyncio.Semaphore(chain_conc)

    async def one(job: ChainBackfill) -> ChainResult:
        try:
            if follow:
                return await job.follow(poll_interval, slot=sem, keep_going=isolate)
            async with sem:
                return await job.run()
        except IndexerError as e:
            log.error(f"[{job.name}] aborted in {job.phase.value}: {e}")
            if not isolate:
                raise
            job.result.error = str(e)
            return job.result
        except Exception as e:
            log.exception(f"[{job.name}] crashed in {job.phase.value}")
            if not isolate:
                raise
            job.result.error = repr(e)
            return job.result

    tasks = [asyncio.create_task(one(job), name=f"backfill-{job.name}") for job in jobs]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
