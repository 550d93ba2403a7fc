"""CLI entrypoint for entity-sync.

Loads one or more bulk export files into an in-memory store and syncs their
kinds into the dataset named by the YAML config:

    entity-sync --config sync.yaml --input accounts.json --kind Account
"""

import argparse
import logging
import os
import sys
from typing import Dict, List, Optional, Sequence

from entitysync import __version__
from entitysync.bulk import load
from entitysync.config import load_config
from entitysync.exceptions import EntitySyncError
from entitysync.logging_config import LOG_FORMATS, setup_logging
from entitysync.runner import build_sink, run_kind
from entitysync.store import MemoryStore

logger = logging.getLogger(__name__)

TOKEN_ENV = "ENTITYSYNC_ACCESS_TOKEN"


def _auth_headers() -> Dict[str, str]:
    token = os.environ.get(TOKEN_ENV)
    return {"Authorization": f"Bearer {token}"} if token else {}


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="entity-sync",
        description="Sync entity kinds from bulk export files into BigQuery",
    )
    parser.add_argument("--config", required=True, help="Path to the YAML config file")
    parser.add_argument(
        "--input",
        action="append",
        default=[],
        help="Bulk export file (JSON array of entity documents); may be repeated",
    )
    parser.add_argument(
        "--kind",
        action="append",
        default=[],
        help="Kind to sync; may be repeated (default: every kind found in the input)",
    )
    parser.add_argument(
        "--validate-only",
        action="store_true",
        help="Only validate the config file",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose (DEBUG level) logging")
    parser.add_argument("--quiet", "-q", action="store_true", help="Suppress all output except errors")
    parser.add_argument(
        "--log-format",
        choices=LOG_FORMATS,
        default=None,
        help="Log format (default: human). Can also set via ENTITYSYNC_LOG_FORMAT env var",
    )
    parser.add_argument("--version", action="version", version=f"entity-sync {__version__}")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)

    log_level = logging.DEBUG if args.verbose else logging.ERROR if args.quiet else logging.INFO
    setup_logging(level=log_level, format_type=args.log_format, use_colors=True)

    try:
        config = load_config(args.config)
    except (EntitySyncError, FileNotFoundError) as e:
        logger.error(f"Invalid config: {e}")
        return 1
    if args.validate_only:
        logger.info(f"Config {args.config} is valid")
        return 0
    if not args.input:
        logger.error("No --input files given")
        return 1

    store = MemoryStore()
    kinds: List[str] = []
    for path in args.input:
        try:
            with open(path, "r", encoding="utf-8") as f:
                keys = load(store, f)
        except (EntitySyncError, OSError) as e:
            logger.error(f"Failed to load {path}: {e}")
            return 1
        for key in keys:
            if key.kind not in kinds:
                kinds.append(key.kind)

    failed = 0
    with build_sink(config, headers=_auth_headers()) as sink:
        for kind in args.kind or kinds:
            reports = run_kind(config, store, kind, sink)
            failed += sum(1 for r in reports if r.errors or not r.done)

    if failed:
        logger.error(f"{failed} range(s) did not sync cleanly")
        return 1
    logger.info("All ranges synced")
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except Exception as exc:
        logger.error(f"Fatal error: {exc}", exc_info=True)
        sys.exit(1)
