import sys

from transfer_indexer.main import run

sys.exit(run())
