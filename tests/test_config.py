import json

import pytest

from transfer_indexer.config import load_settings, load_watchlist
from transfer_indexer.errors import ConfigError


@pytest.fixture
def env(tmp_path):
    return {
        "CHAINS": "ethereum,base",
        "RPC_ETHEREUM": "https://eth.example",
        "RPC_BASE": "https://base.example",
        "CONTRACTS_PATH": str(tmp_path / "missing.json"),
    }


def test_defaults(env):
    s = load_settings(env)
    assert [c.name for c in s.chains] == ["ethereum", "base"]
    assert s.chain("base").rpc_url == "https://base.example"
    assert s.chain("ethereum").start_block is None
    assert s.chunk_size == 1000
    assert s.backfill_blocks == 5000
    assert s.retry_attempts == 3
    assert s.retry_delay == pytest.approx(0.8)
    assert s.isolate_chains is True
    assert s.watch_addresses == ()


def test_overrides(env):
    env.update({
        "START_BLOCK_BASE": "1200000",
        "CHUNK_SIZE": "250",
        "RETRY_ATTEMPTS": "5",
        "RETRY_DELAY_MS": "100",
        "ISOLATE_CHAINS": "false",
        "CONFIRMS": "12",
        "LOG_LEVEL": "debug",
    })
    s = load_settings(env)
    assert s.chain("base").start_block == 1_200_000
    assert s.chunk_size == 250
    assert s.retry_attempts == 5
    assert s.retry_delay == pytest.approx(0.1)
    assert s.isolate_chains is False
    assert s.confirms == 12
    assert s.log_level == "DEBUG"


def test_missing_rpc_url_is_fatal(env):
    del env["RPC_BASE"]
    with pytest.raises(ConfigError, match="RPC_BASE"):
        load_settings(env)


@pytest.mark.parametrize("key,value", [
    ("CHUNK_SIZE", "abc"),
    ("CHUNK_SIZE", "0"),
    ("START_BLOCK_ETHEREUM", "-5"),
    ("RETRY_ATTEMPTS", "0"),
    ("LOG_LEVEL", "chatty"),
    ("ISOLATE_CHAINS", "ture"),
])
def test_invalid_values_are_fatal(env, key, value):
    env[key] = value
    with pytest.raises(ConfigError):
        load_settings(env)


def test_duplicate_chain_tags(env):
    env["CHAINS"] = "base,base"
    with pytest.raises(ConfigError):
        load_settings(env)


def test_unknown_chain_lookup(env):
    with pytest.raises(ConfigError):
        load_settings(env).chain("solana")


def test_watchlist_keeps_erc20_entries(tmp_path):
    p = tmp_path / "contracts.json"
    p.write_text(json.dumps([
        {"address": "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48", "type": "erc20", "name": "USDC"},
        {"address": "0x" + "11" * 20, "type": "erc721"},
    ]))
    assert load_watchlist(str(p)) == ["0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"]


def test_watchlist_rejects_bad_address(tmp_path):
    p = tmp_path / "contracts.json"
    p.write_text(json.dumps([{"address": "0x1234", "type": "erc20"}]))
    with pytest.raises(ConfigError):
        load_watchlist(str(p))


def test_watchlist_rejects_bad_json(tmp_path):
    p = tmp_path / "contracts.json"
    p.write_text("{not json")
    with pytest.raises(ConfigError):
        load_watchlist(str(p))
