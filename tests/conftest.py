"""Shared fixtures and in-memory fakes for the indexer tests."""

from collections import Counter
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional

import pytest

from transfer_indexer.config import ERC20_TRANSFER_TOPIC0, ChainSpec
from transfer_indexer.db import CheckpointStore, TransferSink, db, ensure_schema
from transfer_indexer.errors import ResultLimitError
from transfer_indexer.retry import RetryPolicy

GENESIS_TS = 1_700_000_000


def word(value: int) -> str:
    return "0x" + format(value, "064x")


def addr_topic(address: str) -> str:
    return "0x" + "0" * 24 + address[2:].lower()


def make_log(block: int, tx_hash: str, log_index: int = 0,
             token: str = "0x" + "aa" * 20,
             frm: Optional[str] = "0x" + "11" * 20,
             to: Optional[str] = "0x" + "22" * 20,
             value: Optional[int] = 1000) -> dict:
    """Raw eth_getLogs entry for a Transfer event, hex-string encoded like a JSON-RPC reply."""
    topics = [ERC20_TRANSFER_TOPIC0]
    if frm is not None:
        topics.append(addr_topic(frm))
        if to is not None:
            topics.append(addr_topic(to))
    return {
        "address": token,
        "blockNumber": block,
        "transactionHash": tx_hash,
        "logIndex": log_index,
        "topics": topics,
        "data": word(value) if value is not None else "0x",
    }


def tx_hash(n: int) -> str:
    return "0x" + format(n, "064x")


def block_time(n: int) -> datetime:
    return datetime.fromtimestamp(GENESIS_TS + n * 12, tz=timezone.utc)


class FakeChainClient:
    """
    ChainClient stand-in backed by a list of raw logs.

    max_span: ranges wider than this raise ResultLimitError like a capped provider.
    heads: successive latest_block() answers; the last one repeats.
    hook: called with (from_block, to_block) before each get_logs, may raise.
    """

    def __init__(self, name: str = "ethereum", logs: Iterable[dict] = (),
                 heads: Iterable[int] = (1999,), max_span: Optional[int] = None,
                 suggest: bool = False, hook: Optional[Callable[[int, int], None]] = None):
        self.name = name
        self.logs: List[dict] = list(logs)
        self.heads = list(heads)
        self.max_span = max_span
        self.suggest = suggest
        self.hook = hook
        self.log_calls: List[tuple] = []
        self.block_calls: Counter = Counter()
        self.closed = False

    async def latest_block(self) -> int:
        if len(self.heads) > 1:
            return self.heads.pop(0)
        return self.heads[0]

    async def get_logs(self, from_block, to_block, topic0, addresses=()):
        self.log_calls.append((from_block, to_block))
        if self.hook is not None:
            self.hook(from_block, to_block)
        if self.max_span is not None and to_block - from_block + 1 > self.max_span:
            data = {"from": hex(from_block), "to": hex(from_block + self.max_span - 1)} if self.suggest else None
            raise ResultLimitError("query returned more than 10000 results", code=-32005, data=data,
                                   suggested_to=from_block + self.max_span - 1 if self.suggest else None)
        wanted = {a.lower() for a in addresses}
        return [
            lg for lg in self.logs
            if from_block <= lg["blockNumber"] <= to_block
            and (not wanted or lg["address"].lower() in wanted)
        ]

    async def get_block_timestamp(self, number: int) -> datetime:
        self.block_calls[number] += 1
        return block_time(number)

    async def get_transaction(self, h: str):
        return {"hash": h}

    async def close(self):
        self.closed = True


@pytest.fixture
def conn():
    c = db(":memory:")
    ensure_schema(c)
    yield c
    c.close()


@pytest.fixture
def sink(conn):
    return TransferSink(conn)


@pytest.fixture
def checkpoints(conn):
    return CheckpointStore(conn)


@pytest.fixture
def no_wait_retry():
    return RetryPolicy(attempts=3, base_delay=0)


@pytest.fixture
def ethereum():
    return ChainSpec(name="ethereum", rpc_url="http://localhost:8545")
