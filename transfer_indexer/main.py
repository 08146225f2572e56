import argparse, asyncio, logging, signal, sys
from typing import List, Optional

import uvloop

from transfer_indexer.backfill import ChainResult, build_jobs, run_backfill
from transfer_indexer.client import ChainClient
from transfer_indexer.config import Settings, load_settings
from transfer_indexer.db import CheckpointStore, TransferSink, db, ensure_schema
from transfer_indexer.errors import ConfigError, IndexerError

log = logging.getLogger("transfer_indexer")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Backfill ERC20 Transfer events into sqlite")
    parser.add_argument("--chain", action="append", dest="chains", metavar="NAME",
                        help="only index this chain (repeatable); default: every chain in CHAINS")
    parser.add_argument("--follow", action="store_true",
                        help="keep polling the head after the backfill")
    parser.add_argument("--db", dest="db_path", help="sqlite path (overrides DB_PATH)")
    parser.add_argument("--env-file", default=".env", help="dotenv file to load")
    return parser.parse_args(argv)


def select_chains(settings: Settings, names: Optional[List[str]], db_path: Optional[str]) -> Settings:
    update = {}
    if names:
        update["chains"] = tuple(settings.chain(n.lower()) for n in names)
    if db_path:
        update["db_path"] = db_path
    return settings.model_copy(update=update) if update else settings


async def main(settings: Settings, follow: bool = False) -> List[ChainResult]:
    conn = db(settings.db_path)
    ensure_schema(conn)
    sink, checkpoints = TransferSink(conn), CheckpointStore(conn)
    clients = {c.name: ChainClient(c, timeout=settings.rpc_timeout) for c in settings.chains}

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGTERM, asyncio.current_task().cancel)
        handles_sigterm = True
    except (NotImplementedError, RuntimeError, ValueError):
        handles_sigterm = False

    try:
        jobs = build_jobs(settings, clients, sink, checkpoints)
        return await run_backfill(
            jobs,
            chain_conc=settings.chain_conc,
            isolate=settings.isolate_chains,
            follow=follow,
            poll_interval=settings.poll_interval,
        )
    finally:
        if handles_sigterm:
            loop.remove_signal_handler(signal.SIGTERM)
        for client in clients.values():
            await client.close()
        conn.close()


def run(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    try:
        settings = select_chains(load_settings(dotenv_path=args.env_file), args.chains, args.db_path)
    except ConfigError as e:
        log.error(f"[config] {e}")
        return 1
    logging.getLogger().setLevel(settings.log_level)

    try:
        results = uvloop.run(main(settings, follow=args.follow))
    except IndexerError as e:
        log.error(f"[backfill] fatal: {e}")
        return 1
    except (KeyboardInterrupt, asyncio.CancelledError):
        log.warning("[backfill] interrupted; rerun resumes from the last checkpoint")
        return 1

    for r in results:
        status = "ok" if r.ok else f"FAILED ({r.error})"
        log.info(f"[{r.chain}] {status}: chunks={r.chunks} logs={r.logs} "
                 f"records={r.records} skipped={r.skipped} checkpoint={r.checkpoint}")
    return 0 if all(r.ok for r in results) else 1


if __name__ == "__main__":
    sys.exit(run())
