import logging
from typing import Any, List, Mapping, Optional, Sequence

from transfer_indexer.config import ERC20_TRANSFER_TOPIC0
from transfer_indexer.errors import ResultLimitError
from transfer_indexer.models import BlockRange
from transfer_indexer.retry import RetryPolicy

log = logging.getLogger(__name__)


def split_point(rng: BlockRange, suggested_to: Optional[int]) -> Optional[int]:
    """
    Where to cut an overflowing range: the provider's suggestion when it leaves
    two non-empty halves, else the midpoint. None when the range is a single block.
    """
    if rng.size <= 1:
        return None
    if suggested_to is not None and rng.from_block <= suggested_to < rng.to_block:
        return suggested_to
    return (rng.from_block + rng.to_block) // 2


async def fetch_logs(
    client,
    rng: BlockRange,
    topic0: str = ERC20_TRANSFER_TOPIC0,
    addresses: Sequence[str] = (),
    retry: Optional[RetryPolicy] = None,
) -> List[Mapping[str, Any]]:
    """
    All raw logs matching topic0 in `rng`, or an exception; never a partial result.

    Sub-ranges that hit the provider's result-size limit are split and requeued.
    Order across sub-ranges is not preserved.
    """
    retry = retry or RetryPolicy()
    pending: List[BlockRange] = [rng]
    out: List[Mapping[str, Any]] = []
    splits = 0

    while pending:
        sub = pending.pop()
        try:
            raw = await retry.run(
                lambda: client.get_logs(sub.from_block, sub.to_block, topic0, addresses),
                label=f"{client.name} getLogs {sub}",
            )
        except ResultLimitError as e:
            at = split_point(sub, e.suggested_to)
            if at is None:
                log.error(f"[{client.name}] block {sub.from_block} alone exceeds the provider log limit")
                raise
            left, right = sub.split(at)
            log.debug(f"[{client.name}] {sub} too many results; split into {left} + {right}")
            pending.append(right)
            pending.append(left)
            splits += 1
            continue

        out.extend(raw)

    if splits:
        log.info(f"[{client.name}] {rng} resolved with {splits} split(s)")
    return out
