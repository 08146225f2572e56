from typing import Any, Mapping, Optional

from web3 import Web3

from transfer_indexer.errors import NormalizationError
from transfer_indexer.models import LogEvent


# ---------------- helpers ----------------
def to_hex(x) -> Optional[str]:
    if x is None: return None
    if isinstance(x, (bytes, bytearray)): return Web3.to_hex(x)
    if isinstance(x, int): return hex(x)
    s = str(x)
    return s if s.startswith("0x") else "0x" + s

def to_addr(x) -> Optional[str]:
    """Lower-case hex address; storage keys never use checksum casing."""
    if x is None: return None
    return to_hex(x).lower()

def hex_to_int(x) -> Optional[int]:
    if x is None: return None
    if isinstance(x, int): return x
    if isinstance(x, (bytes, bytearray)): return int.from_bytes(x, "big")
    s = str(x)
    return int(s, 16) if s.startswith("0x") else int(s)

def topic_to_addr(topic) -> str:
    # topics are 32-byte values; address is the last 20 bytes
    return "0x" + to_hex(topic)[-40:].lower()

def decode_uint256(data) -> Optional[int]:
    """First 32-byte word of the log data, None for empty data."""
    h = to_hex(data)
    h = h[2:] if h else ""
    if len(h) < 64:
        return None
    return int(h[:64], 16)


def decode_transfer_log(lg: Mapping[str, Any]) -> LogEvent:
    """
    Transfer(address indexed from, address indexed to, uint256 value)
    topics = [sig, from, to], data = abi.encode(value)

    Optional fields that are absent are left as None; the normalizer decides what
    to reject. A log that cannot be read at all raises NormalizationError.
    """
    try:
        topics = list(lg.get("topics") or [])
        block_number = hex_to_int(lg["blockNumber"])
        if block_number is None:
            raise NormalizationError(f"pending log {lg.get('transactionHash')!r} has no block")
        return LogEvent(
            tx_hash=to_hex(lg["transactionHash"]).lower(),
            block_number=block_number,
            log_index=hex_to_int(lg.get("logIndex")) or 0,
            address=to_addr(lg["address"]),
            from_address=topic_to_addr(topics[1]) if len(topics) > 1 else None,
            to_address=topic_to_addr(topics[2]) if len(topics) > 2 else None,
            value=decode_uint256(lg.get("data")),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise NormalizationError(f"undecodable log {lg.get('transactionHash')!r}: {e!r}") from e
