"""
progression.__main__ — Entry point for ``python -m progression``
=================================================================

Subcommands::

    python -m progression serve        # run the API with uvicorn
    python -m progression init-db      # create tables + seed the reward catalog
    python -m progression reconcile    # repair drifted level fields
"""

from __future__ import annotations

import argparse
import logging
import os
import sys

from dotenv import load_dotenv

from progression.config import load_config
from progression.database.engine import create_db_engine, init_db

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("progression")


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    cfg = load_config(args.config)
    # The app process (and every reload worker) reads the same file
    os.environ["PROGRESSION_CONFIG"] = args.config
    init_db(create_db_engine())
    uvicorn.run(
        "progression.api.main:app",
        host=args.host,
        port=args.port or cfg.api_port,
        reload=args.reload,
    )
    return 0


def _init_db(args: argparse.Namespace) -> int:
    init_db(create_db_engine())
    logger.info("Database initialised.")
    return 0


def _reconcile(args: argparse.Namespace) -> int:
    from progression.services.reconciliation_service import reconcile_user_stats

    engine = create_db_engine()
    report = reconcile_user_stats(engine, actor_id=args.actor)
    logger.info(
        "Checked %d users, corrected %d, failed %d",
        report["checked"], report["corrected"], len(report["failed"]),
    )
    return 1 if report["failed"] else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="progression", description=__doc__.splitlines()[1])
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=None)
    serve.add_argument("--config", default="config.yaml")
    serve.add_argument("--reload", action="store_true")
    serve.set_defaults(func=_serve)

    init = sub.add_parser("init-db", help="create tables and seed default settings")
    init.set_defaults(func=_init_db)

    rec = sub.add_parser("reconcile", help="repair level fields that drifted from XP totals")
    rec.add_argument("--actor", default=None, help="admin id recorded in admin_log")
    rec.set_defaults(func=_reconcile)
    return parser


def main(argv: list[str] | None = None) -> int:
    """Bootstrap and dispatch a subcommand."""
    load_dotenv()
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except RuntimeError as exc:
        logger.critical("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
