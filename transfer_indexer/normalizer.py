from datetime import datetime

from transfer_indexer.errors import NormalizationError
from transfer_indexer.models import LogEvent, TransferRecord


def normalize(lg: LogEvent, timestamp: datetime, chain: str) -> TransferRecord:
    """
    Canonical transfer record for one Transfer log.

    Addresses are lower-cased, the amount is kept as a decimal string. A missing
    receiver stays None (never the zero address, which means a burn); a missing
    sender or amount makes the log unusable.
    """
    if lg.from_address is None:
        raise NormalizationError(f"log {lg.tx_hash}#{lg.log_index} has no sender topic")
    if lg.value is None:
        raise NormalizationError(f"log {lg.tx_hash}#{lg.log_index} has no uint256 value")
    if lg.value < 0:
        raise NormalizationError(f"log {lg.tx_hash}#{lg.log_index} has negative value {lg.value}")

    return TransferRecord(
        chain=chain,
        hash=lg.tx_hash.lower(),
        block_number=int(lg.block_number),
        timestamp=timestamp,
        from_address=lg.from_address.lower(),
        to_address=lg.to_address.lower() if lg.to_address else None,
        value_wei=str(int(lg.value)),
        contract_address=lg.address.lower(),
    )
