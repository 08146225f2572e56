from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, Optional


@dataclass(slots=True, frozen=True)
class BlockRange:
    """Inclusive block range [from_block, to_block]."""
    from_block: int
    to_block: int

    def __post_init__(self):
        if self.from_block < 0 or self.from_block > self.to_block:
            raise ValueError(f"bad block range {self.from_block} -> {self.to_block}")

    @property
    def size(self) -> int:
        return self.to_block - self.from_block + 1

    def split(self, at: int) -> tuple["BlockRange", "BlockRange"]:
        """[from, at] and [at + 1, to]; both halves must be non-empty."""
        if not (self.from_block <= at < self.to_block):
            raise ValueError(f"split point {at} outside {self}")
        return BlockRange(self.from_block, at), BlockRange(at + 1, self.to_block)

    def chunks(self, size: int) -> Iterator["BlockRange"]:
        start = self.from_block
        while start <= self.to_block:
            end = min(start + size - 1, self.to_block)
            yield BlockRange(start, end)
            start = end + 1

    def __str__(self):
        return f"{self.from_block} -> {self.to_block}"


@dataclass(slots=True, frozen=True)
class LogEvent:
    tx_hash: str                       # lowercased hex with 0x
    block_number: int
    log_index: int
    address: str                       # emitting contract
    from_address: Optional[str]        # None when topic missing
    to_address: Optional[str]
    value: Optional[int]               # uint256, None when data missing


@dataclass(slots=True, frozen=True)
class TransferRecord:
    chain: str
    hash: str
    block_number: int
    timestamp: datetime
    from_address: str
    to_address: Optional[str]
    value_wei: str                     # decimal string, never a float
    contract_address: str


@dataclass(slots=True, frozen=True)
class ContractRecord:
    id: int
    chain: str
    address: str
    name: Optional[str]
    created_at: int


@dataclass(slots=True, frozen=True)
class Checkpoint:
    chain: str
    last_scanned_block: int
