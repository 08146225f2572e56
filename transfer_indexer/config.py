import os, json, pathlib, logging
from typing import Dict, List, Mapping, Optional, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from web3 import Web3

from transfer_indexer.errors import ConfigError

log = logging.getLogger(__name__)

# --- ERC-20 topics (keccak256) ---
ERC20_TRANSFER_TOPIC0 = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

DEFAULT_CHAINS = "ethereum,base"


class ChainSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, pattern=r"^[a-z0-9_]+$")
    rpc_url: str = Field(min_length=1)
    start_block: Optional[int] = Field(None, ge=0)


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    chains: Tuple[ChainSpec, ...]
    backfill_blocks: int = Field(5000, ge=1)
    chunk_size:      int = Field(1000, ge=1)
    confirms:        int = Field(0, ge=0)
    retry_attempts:  int = Field(3, ge=1)
    retry_delay:     float = Field(0.8, ge=0)       # seconds
    timestamp_conc:  int = Field(10, ge=1)
    chain_conc:      int = Field(4, ge=1)
    isolate_chains:  bool = True
    rpc_timeout:     float = Field(30.0, gt=0)
    poll_interval:   float = Field(12.0, gt=0)
    db_path:         str = "transfers_index.sqlite"
    watch_addresses: Tuple[str, ...] = ()
    log_level:       str = "INFO"

    @field_validator("chains")
    @classmethod
    def _unique_chains(cls, v):
        if not v:
            raise ValueError("no chains configured")
        names = [c.name for c in v]
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate chain tags in {names}")
        return v

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, v):
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown LOG_LEVEL {v!r}")
        return v

    def chain(self, name: str) -> ChainSpec:
        for c in self.chains:
            if c.name == name:
                return c
        raise ConfigError(f"unknown chain {name!r}")


def _int(env: Mapping[str, str], key: str, default: Optional[int]) -> Optional[int]:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from None


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from None


def _bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    v = raw.strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{key} must be a boolean, got {raw!r}")


def load_watchlist(path: str) -> List[str]:
    """Lower-cased erc20 addresses from the contracts watchlist; empty when the file is absent."""
    p = pathlib.Path(path)
    if not p.exists():
        log.info(f"[contracts] {path} not found; indexing every Transfer emitter")
        return []
    try:
        contracts = json.loads(p.read_text())
    except ValueError as e:
        raise ConfigError(f"[contracts] failed to parse {path}: {e}") from e

    watch = []
    for c in contracts:
        if (c.get("type") or "").lower() != "erc20":
            continue
        addr = c.get("address") or ""
        if not Web3.is_address(addr):
            raise ConfigError(f"[contracts] invalid address {addr!r} in {path}")
        watch.append(addr.lower())
    return watch


def load_settings(env: Optional[Mapping[str, str]] = None, dotenv_path: str = ".env") -> Settings:
    """Build Settings from the environment (after loading .env); raises ConfigError."""
    if env is None:
        load_dotenv(dotenv_path)
        env = os.environ

    names = [n.strip().lower() for n in env.get("CHAINS", DEFAULT_CHAINS).split(",") if n.strip()]
    chains = []
    for name in names:
        key = name.upper()
        rpc = env.get(f"RPC_{key}")
        if not rpc:
            raise ConfigError(f"Missing RPC_{key} for chain {name!r}")
        chains.append({
            "name": name,
            "rpc_url": rpc,
            "start_block": _int(env, f"START_BLOCK_{key}", None),
        })

    values: Dict[str, object] = {
        "chains": chains,
        "backfill_blocks": _int(env, "BACKFILL_BLOCKS", 5000),
        "chunk_size":      _int(env, "CHUNK_SIZE", 1000),
        "confirms":        _int(env, "CONFIRMS", 0),
        "retry_attempts":  _int(env, "RETRY_ATTEMPTS", 3),
        "retry_delay":     _float(env, "RETRY_DELAY_MS", 800.0) / 1000.0,
        "timestamp_conc":  _int(env, "TIMESTAMP_CONC", 10),
        "chain_conc":      _int(env, "CHAIN_CONC", 4),
        "isolate_chains":  _bool(env, "ISOLATE_CHAINS", True),
        "rpc_timeout":     _float(env, "RPC_TIMEOUT", 30.0),
        "poll_interval":   _float(env, "POLL_INTERVAL", 12.0),
        "db_path":         env.get("DB_PATH", "transfers_index.sqlite"),
        "watch_addresses": load_watchlist(env.get("CONTRACTS_PATH", "contracts.json")),
        "log_level":       env.get("LOG_LEVEL", "INFO").upper(),
    }
    try:
        return Settings(**values)
    except ValidationError as e:
        raise ConfigError(f"invalid configuration: {e}") from e
