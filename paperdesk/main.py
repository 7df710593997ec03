"""Main entry point — runs the REST API or bootstraps an administrator.

Usage:
    python -m paperdesk.main serve                  # Start the REST API
    python -m paperdesk.main serve --port 9000
    python -m paperdesk.main create-admin EMAIL PASSWORD
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from paperdesk.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        description="Paperdesk — conference paper submission and review workflow",
    )
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Start the REST API server (FastAPI + uvicorn)")
    serve.add_argument(
        "--host",
        default=settings.server.host,
        help=f"API host (default: {settings.server.host})",
    )
    serve.add_argument(
        "--port",
        type=int,
        default=settings.server.rest_port,
        help=f"API port (default: {settings.server.rest_port})",
    )
    serve.add_argument("--workers", type=int, default=None, help="Number of uvicorn workers")

    admin = sub.add_parser("create-admin", help="Create an Admin account, or promote an existing user")
    admin.add_argument("email")
    admin.add_argument("password")

    args = parser.parse_args(argv)
    logging.basicConfig(level=settings.server.log_level.upper(), format=LOG_FORMAT)

    settings.ensure_dirs()

    if args.command == "create-admin":
        return _create_admin(args.email, args.password)
    if args.command in (None, "serve"):
        _start_api(
            getattr(args, "host", settings.server.host),
            getattr(args, "port", settings.server.rest_port),
            getattr(args, "workers", None),
        )
    return 0


def _create_admin(email: str, password: str) -> int:
    from paperdesk.database import get_db
    from paperdesk.errors import PaperdeskError
    from paperdesk.user_service import ensure_admin

    async def run():
        db = await get_db(settings)
        try:
            return await ensure_admin(db, email, password)
        finally:
            await db.close()

    try:
        user = asyncio.run(run())
    except PaperdeskError as exc:
        print(f"error: {exc.message}", file=sys.stderr)
        return 1
    print(f"Admin ready: {user.email} ({user.user_id})", file=sys.stderr)
    return 0


def _start_api(host: str, port: int, workers: int | None = None):
    """Start the REST API server."""
    import uvicorn

    print(f"Starting Paperdesk REST API at http://{host}:{port}", file=sys.stderr)
    print(f"API docs at http://{host}:{port}/docs", file=sys.stderr)
    worker_count = workers if workers is not None else settings.server.workers
    uvicorn.run(
        "paperdesk.api:app",
        host=host,
        port=port,
        log_level=settings.server.log_level,
        workers=worker_count,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )


if __name__ == "__main__":
    sys.exit(main())
