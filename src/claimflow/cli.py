"""Claimflow CLI.

Usage:
    python -m claimflow serve [--host HOST] [--port PORT]
    python -m claimflow worker
    python -m claimflow migrate [--revision REV] [--downgrade]
    python -m claimflow create-organization --name NAME [--id ID]

Exit codes:
    0: Success
    1: Internal error
    2: Configuration error
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys

from claimflow.persistence.db import DatabaseConfigError

logger = logging.getLogger(__name__)

LOG_LEVEL_ENV = "CLAIMFLOW_LOG_LEVEL"


def _configure_logging() -> None:
    logging.basicConfig(
        level=os.environ.get(LOG_LEVEL_ENV, "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from claimflow.api.main import create_app

    uvicorn.run(create_app(), host=args.host, port=args.port)
    return 0


def cmd_worker(args: argparse.Namespace) -> int:
    """Consume the reconciliation queues until interrupted."""
    from claimflow.cache import create_cache_layer
    from claimflow.jobs.queue import InMemoryJobQueue, create_job_queue
    from claimflow.jobs.worker import ReconciliationWorker
    from claimflow.observability.tracing import configure_tracing

    queue = create_job_queue()
    if isinstance(queue, InMemoryJobQueue):
        logger.error(
            "The standalone worker needs CLAIMFLOW_REDIS_URL; the in-memory queue is per process"
        )
        return 2

    configure_tracing()
    worker = ReconciliationWorker(queue, cache=create_cache_layer())
    try:
        asyncio.run(worker.run_forever())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    return 0


def cmd_migrate(args: argparse.Namespace) -> int:
    from claimflow.persistence.migrate import run_downgrade, run_upgrade

    if args.downgrade:
        run_downgrade(revision=args.revision or "base")
    else:
        run_upgrade(revision=args.revision or "head")
    return 0


def cmd_create_organization(args: argparse.Namespace) -> int:
    from claimflow.persistence.db import begin_app_conn, is_postgres_configured
    from claimflow.persistence.repositories.organizations import get_organizations_repository

    if is_postgres_configured():
        with begin_app_conn() as conn:
            org = get_organizations_repository(conn).create(args.name, organization_id=args.id)
    else:
        org = get_organizations_repository(None).create(args.name, organization_id=args.id)

    print(json.dumps(org.model_dump(mode="json"), sort_keys=True))
    return 0


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="claimflow",
        description="Claimflow - tenant-scoped insurance claim lifecycle service",
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)

    subparsers.add_parser("worker", help="Run the reconciliation worker")

    migrate_parser = subparsers.add_parser("migrate", help="Apply database migrations")
    migrate_parser.add_argument("--revision", default=None, metavar="REV")
    migrate_parser.add_argument(
        "--downgrade",
        action="store_true",
        default=False,
        help="Downgrade to REV (default: base) instead of upgrading",
    )

    org_parser = subparsers.add_parser("create-organization", help="Create a tenant")
    org_parser.add_argument("--name", required=True)
    org_parser.add_argument("--id", default=None, help="Organization id (default: generated)")

    return parser


COMMANDS = {
    "serve": cmd_serve,
    "worker": cmd_worker,
    "migrate": cmd_migrate,
    "create-organization": cmd_create_organization,
}


def main(argv: list[str] | None = None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    _configure_logging()
    try:
        return COMMANDS[args.command](args)
    except DatabaseConfigError as e:
        logger.error("%s", e)
        return 2
    except Exception:
        logger.exception("Command %s failed", args.command)
        return 1


if __name__ == "__main__":
    sys.exit(main())
