import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from transfer_indexer.config import ChainSpec
from transfer_indexer.errors import classify_rpc_error
from transfer_indexer.helpers import hex_to_int

log = logging.getLogger(__name__)


class ChainClient:
    """
    Thin async wrapper around one chain's JSON-RPC endpoint.

    Every call converts provider/transport exceptions into the RpcError taxonomy
    (transient / size-limit / permanent) so callers never inspect raw web3 errors.
    """

    def __init__(self, spec: ChainSpec, w3: Optional[AsyncWeb3] = None, timeout: float = 30.0):
        self.name = spec.name
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(
            spec.rpc_url, request_kwargs={"timeout": aiohttp.ClientTimeout(total=timeout)}
        ))

    async def latest_block(self) -> int:
        try:
            return int(await self.w3.eth.block_number)
        except Exception as e:
            raise classify_rpc_error(e) from e

    async def get_logs(self, from_block: int, to_block: int, topic0: str,
                       addresses: Sequence[str] = ()) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {
            "fromBlock": from_block,
            "toBlock": to_block,
            "topics": [topic0],
        }
        if addresses:
            params["address"] = [Web3.to_checksum_address(a) for a in addresses]
        log.debug(f"[{self.name}] eth_getLogs {from_block} -> {to_block}")
        try:
            return list(await self.w3.eth.get_logs(params))
        except Exception as e:
            raise classify_rpc_error(e) from e

    async def get_block(self, number: int):
        try:
            return await self.w3.eth.get_block(block_identifier=number, full_transactions=False)
        except Exception as e:
            raise classify_rpc_error(e) from e

    async def get_block_timestamp(self, number: int) -> datetime:
        b = await self.get_block(number)
        return datetime.fromtimestamp(hex_to_int(b["timestamp"]), tz=timezone.utc)

    async def get_transaction(self, tx_hash: str):
        try:
            return await self.w3.eth.get_transaction(tx_hash)
        except Exception as e:
            raise classify_rpc_error(e) from e

    async def close(self):
        provider = self.w3.provider
        disconnect = getattr(provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()
