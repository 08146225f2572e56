import asyncio
import re
from typing import Any, Optional

import aiohttp


class IndexerError(Exception):
    """Base class for every error raised by the indexer."""


class ConfigError(IndexerError):
    """Invalid or missing configuration, raised before any scanning."""


class RpcError(IndexerError):
    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.code = code
        self.data = data


class TransientRpcError(RpcError):
    """Timeouts, rate limits, dropped connections. Safe to retry."""


class PermanentRpcError(RpcError):
    """Malformed request or any error a retry cannot fix."""


class ResultLimitError(RpcError):
    """Provider refused the range because it matches too many logs."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None,
                 suggested_to: Optional[int] = None):
        super().__init__(message, code, data)
        self.suggested_to = suggested_to


class NormalizationError(IndexerError):
    """A log could not be turned into a transfer record."""


class StorageError(IndexerError):
    """A chunk could not be committed to storage."""


class ChunkError(IndexerError):
    def __init__(self, chain: str, block_range, cause: BaseException):
        super().__init__(f"[{chain}] chunk {block_range} failed: {cause}")
        self.chain = chain
        self.block_range = block_range
        self.cause = cause


# ---------- classification at the RPC boundary ----------
LIMIT_PATTERNS = re.compile(
    r"query returned more than \d+ results"
    r"|more than \d+ results"
    r"|too many results"
    r"|log response size exceeded"
    r"|response size exceeded"
    r"|exceeds? (the )?max(imum)? (results|logs)",
    re.IGNORECASE,
)
TRANSIENT_PATTERNS = re.compile(
    r"rate limit|request rate|too many requests|request count exceeded"
    r"|timeout|timed out|try again|temporarily unavailable|header not found"
    r"|capacity|overloaded|connection reset|bad gateway|service unavailable",
    re.IGNORECASE,
)
SUGGESTED_RANGE = re.compile(r"\[\s*(0x[0-9a-fA-F]+)\s*,\s*(0x[0-9a-fA-F]+)\s*\]")

LIMIT_CODE = -32005
TRANSIENT_HTTP_STATUS = {408, 425, 429, 500, 502, 503, 504}


def _rpc_payload(exc: BaseException) -> Optional[dict]:
    # web3 v7 keeps the raw response on Web3RPCError, v6 raises ValueError(dict)
    resp = getattr(exc, "rpc_response", None)
    if isinstance(resp, dict) and isinstance(resp.get("error"), dict):
        return resp["error"]
    if exc.args and isinstance(exc.args[0], dict):
        return exc.args[0]
    return None


def _suggested_to(message: str, data: Any) -> Optional[int]:
    if isinstance(data, dict) and data.get("to") is not None:
        to = data["to"]
        try:
            return int(to, 16) if isinstance(to, str) else int(to)
        except ValueError:
            return None
    m = SUGGESTED_RANGE.search(message or "")
    if m:
        return int(m.group(2), 16)
    return None


def classify_rpc_error(exc: BaseException) -> RpcError:
    """Map any exception from the RPC layer onto transient / size-limit / permanent."""
    if isinstance(exc, RpcError):
        return exc

    if isinstance(exc, aiohttp.ClientResponseError):
        msg = f"HTTP {exc.status}: {exc.message}"
        if exc.status in TRANSIENT_HTTP_STATUS:
            return TransientRpcError(msg, code=exc.status)
        if exc.status == 413:
            return ResultLimitError(msg, code=exc.status)
        return PermanentRpcError(msg, code=exc.status)

    if isinstance(exc, (asyncio.TimeoutError, aiohttp.ClientConnectionError,
                        aiohttp.ServerTimeoutError, ConnectionError)):
        return TransientRpcError(f"{type(exc).__name__}: {exc}")

    payload = _rpc_payload(exc)
    if payload is not None:
        code = payload.get("code")
        message = str(payload.get("message") or "")
        data = payload.get("data")
    else:
        code, message, data = None, str(exc), None

    if LIMIT_PATTERNS.search(message):
        return ResultLimitError(message, code, data, suggested_to=_suggested_to(message, data))
    if TRANSIENT_PATTERNS.search(message):
        return TransientRpcError(message, code, data)
    # -32005 is also Infura's rate-limit code; only a range suggestion marks it as a size limit
    if code == LIMIT_CODE:
        suggested = _suggested_to(message, data)
        if suggested is not None:
            return ResultLimitError(message, code, data, suggested_to=suggested)
        return TransientRpcError(message, code, data)
    return PermanentRpcError(message or type(exc).__name__, code, data)
