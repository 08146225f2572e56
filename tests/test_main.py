import pytest

from conftest import FakeChainClient, make_log, tx_hash

from transfer_indexer import main as entry
from transfer_indexer.config import load_settings
from transfer_indexer.db import CheckpointStore, TransferSink, db
from transfer_indexer.errors import ConfigError, PermanentRpcError


@pytest.fixture
def settings(tmp_path):
    return load_settings({
        "CHAINS": "ethereum,base",
        "RPC_ETHEREUM": "https://eth.example",
        "RPC_BASE": "https://base.example",
        "START_BLOCK_ETHEREUM": "0",
        "START_BLOCK_BASE": "0",
        "RETRY_DELAY_MS": "0",
        "DB_PATH": str(tmp_path / "index.sqlite"),
        "CONTRACTS_PATH": str(tmp_path / "none.json"),
    })


@pytest.fixture
def fake_clients(monkeypatch):
    made = {}

    def factory(spec, timeout=30.0):
        made[spec.name] = FakeChainClient(
            spec.name, logs=[make_log(b, tx_hash(b)) for b in range(0, 2500, 250)], heads=[2499],
        )
        return made[spec.name]

    monkeypatch.setattr(entry, "ChainClient", factory)
    return made


def test_parse_args():
    args = entry.parse_args(["--chain", "base", "--chain", "ethereum", "--follow", "--db", "x.sqlite"])
    assert args.chains == ["base", "ethereum"]
    assert args.follow is True
    assert args.db_path == "x.sqlite"


def test_select_chains(settings):
    s = entry.select_chains(settings, ["BASE"], "other.sqlite")
    assert [c.name for c in s.chains] == ["base"]
    assert s.db_path == "other.sqlite"
    assert entry.select_chains(settings, None, None) is settings


def test_select_unknown_chain(settings):
    with pytest.raises(ConfigError):
        entry.select_chains(settings, ["solana"], None)


@pytest.mark.asyncio
async def test_main_indexes_every_chain(settings, fake_clients):
    results = await entry.main(settings)

    assert {r.chain for r in results} == {"ethereum", "base"}
    assert all(r.ok and r.records == 10 and r.checkpoint == 2499 for r in results)
    assert all(c.closed for c in fake_clients.values())

    conn = db(settings.db_path)
    assert TransferSink(conn).count_transactions() == 20
    assert CheckpointStore(conn).get("base") == 2499
    conn.close()


def test_run_exits_1_on_config_error(monkeypatch, tmp_path):
    monkeypatch.setenv("CHAINS", "nochain")
    monkeypatch.delenv("RPC_NOCHAIN", raising=False)
    assert entry.run(["--env-file", str(tmp_path / "absent.env")]) == 1


def test_run_exit_codes(monkeypatch, tmp_path, fake_clients):
    monkeypatch.setenv("CHAINS", "ethereum")
    monkeypatch.setenv("RPC_ETHEREUM", "https://eth.example")
    monkeypatch.setenv("START_BLOCK_ETHEREUM", "0")
    monkeypatch.setenv("CONTRACTS_PATH", str(tmp_path / "none.json"))
    monkeypatch.setenv("LOG_LEVEL", "INFO")
    argv = ["--env-file", str(tmp_path / "absent.env"), "--db", str(tmp_path / "run.sqlite")]

    assert entry.run(argv) == 0

    async def broken(self, *a, **kw):
        raise PermanentRpcError("method not found")

    monkeypatch.setattr(FakeChainClient, "get_logs", broken)
    argv[-1] = str(tmp_path / "fresh.sqlite")
    assert entry.run(argv) == 1
