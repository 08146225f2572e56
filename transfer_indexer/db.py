import sqlite3, time, pathlib
from typing import Any, Dict, Iterable, Optional

from transfer_indexer.errors import StorageError
from transfer_indexer.models import Checkpoint, ContractRecord, TransferRecord

SCHEMA_PATH = pathlib.Path(__file__).with_name("schema.sql")
CHECKPOINT_KEY = "last_scanned_block:{chain}"


def db(path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(path, isolation_level=None, check_same_thread=False)
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA temp_store=MEMORY;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn

def ensure_schema(conn: sqlite3.Connection):
    conn.executescript(SCHEMA_PATH.read_text(encoding="utf-8"))

def get_meta(conn, key, default=None):
    row = conn.execute("SELECT v FROM meta WHERE k=?", (key,)).fetchone()
    return row[0] if row else default

def set_meta(conn, key, value):
    conn.execute("INSERT INTO meta(k,v) VALUES(?,?) ON CONFLICT(k) DO UPDATE SET v=excluded.v;", (key, value))


class CheckpointStore:
    """Last fully indexed block per chain, kept in the meta table."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def get(self, chain: str) -> Optional[int]:
        v = get_meta(self.conn, CHECKPOINT_KEY.format(chain=chain))
        return int(v) if v is not None else None

    def set(self, chain: str, block_number: int):
        try:
            set_meta(self.conn, CHECKPOINT_KEY.format(chain=chain), str(int(block_number)))
        except sqlite3.Error as e:
            raise StorageError(f"[{chain}] checkpoint write failed: {e}") from e

    def checkpoint(self, chain: str) -> Optional[Checkpoint]:
        v = self.get(chain)
        return Checkpoint(chain, v) if v is not None else None


class TransferSink:
    """
    Idempotent writer for transfer records.

    Transactions are unique by (chain, hash), contracts by (chain, address);
    re-delivering a record overwrites the row with identical values.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def find_or_create_contract(self, chain: str, address: str) -> int:
        address = address.lower()
        self.conn.execute("""
            INSERT INTO contracts(chain, address, created_at)
            VALUES(?,?,?)
            ON CONFLICT(chain, address) DO NOTHING
        """, (chain, address, int(time.time())))
        row = self.conn.execute(
            "SELECT id FROM contracts WHERE chain=? AND address=?", (chain, address)
        ).fetchone()
        return row[0]

    def upsert_transaction(self, rec: TransferRecord, contract_id: int):
        self.conn.execute("""
            INSERT INTO transactions
            (chain, hash, block_number, timestamp, from_address, to_address, value_wei, contract_id)
            VALUES (?,?,?,?,?,?,?,?)
            ON CONFLICT(chain, hash) DO UPDATE SET
              block_number=excluded.block_number,
              timestamp=excluded.timestamp,
              from_address=excluded.from_address,
              to_address=excluded.to_address,
              value_wei=excluded.value_wei,
              contract_id=excluded.contract_id
        """, (
            rec.chain,
            rec.hash,
            rec.block_number,
            int(rec.timestamp.timestamp()),
            rec.from_address,
            rec.to_address,
            rec.value_wei,
            contract_id,
        ))

    def upsert(self, rec: TransferRecord):
        contract_id = self.find_or_create_contract(rec.chain, rec.contract_address)
        self.upsert_transaction(rec, contract_id)

    def persist_chunk(self, records: Iterable[TransferRecord]) -> int:
        """Write all records in one transaction; on any failure nothing is kept."""
        n = 0
        try:
            self.conn.execute("BEGIN IMMEDIATE")
            for rec in records:
                self.upsert(rec)
                n += 1
            self.conn.execute("COMMIT")
        except sqlite3.Error as e:
            self._rollback()
            raise StorageError(f"chunk write failed after {n} record(s): {e}") from e
        except BaseException:
            self._rollback()
            raise
        return n

    def _rollback(self):
        if self.conn.in_transaction:
            self.conn.execute("ROLLBACK")

    # ---------- reads (used by tests and the run summary) ----------
    def get_contract(self, chain: str, address: str) -> Optional[ContractRecord]:
        row = self.conn.execute("""
            SELECT id, chain, address, name, created_at FROM contracts
            WHERE chain=? AND address=?
        """, (chain, address.lower())).fetchone()
        return ContractRecord(*row) if row else None

    def get_transaction(self, chain: str, tx_hash: str) -> Optional[Dict[str, Any]]:
        cur = self.conn.execute("""
            SELECT t.chain AS chain, t.hash AS hash, t.block_number AS block_number,
                   t.timestamp AS timestamp, t.from_address AS from_address,
                   t.to_address AS to_address, t.value_wei AS value_wei,
                   c.address AS contract_address
            FROM transactions t JOIN contracts c ON c.id = t.contract_id
            WHERE t.chain=? AND t.hash=?
        """, (chain, tx_hash.lower()))
        row = cur.fetchone()
        if row is None:
            return None
        return {d[0]: v for d, v in zip(cur.description, row)}

    def count_transactions(self, chain: Optional[str] = None) -> int:
        if chain is None:
            return self.conn.execute("SELECT COUNT(*) FROM transactions").fetchone()[0]
        return self.conn.execute(
            "SELECT COUNT(*) FROM transactions WHERE chain=?", (chain,)
        ).fetchone()[0]

    def count_contracts(self, chain: Optional[str] = None) -> int:
        if chain is None:
            return self.conn.execute("SELECT COUNT(*) FROM contracts").fetchone()[0]
        return self.conn.execute(
            "SELECT COUNT(*) FROM contracts WHERE chain=?", (chain,)
        ).fetchone()[0]
