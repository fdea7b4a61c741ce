import argparse
import asyncio
import logging
import uuid
from typing import Awaitable, Callable, Sequence

from fastapi import HTTPException
from pydantic import BaseModel

from ebook_media.core.config import settings
from ebook_media.core.logging_config import configure_logging, request_id_ctx_var
from ebook_media.core.sentry import init_sentry
from ebook_media.core.startup_checks import validate_runtime_settings
from ebook_media.db.session import SessionLocal
from ebook_media.services import media_audit, media_deletion, media_gc, media_ledger, media_reindex
from ebook_media.services.blob_storage import BlobStorageNotConfiguredError, get_media_storage, get_versions_storage
from ebook_media.services.media_ledger import MediaBackendUnavailableError

logger = logging.getLogger("ebook_media.cli")


async def _reindex(args: argparse.Namespace) -> BaseModel:
    async with SessionLocal() as session:
        return await media_reindex.reindex_now(session, versions_storage=get_versions_storage())


async def _enqueue_deletion(args: argparse.Namespace) -> BaseModel:
    async with SessionLocal() as session:
        return await media_deletion.enqueue_deletion(session, args.media_key)


async def _gc(args: argparse.Namespace) -> BaseModel:
    async with SessionLocal() as session:
        return await media_gc.run_gc_batch(session, get_media_storage(), batch_size=args.batch_size)


async def _audit(args: argparse.Namespace) -> BaseModel:
    async with SessionLocal() as session:
        return await media_audit.run_audit(session, get_media_storage())


async def _pending(args: argparse.Namespace) -> BaseModel:
    async with SessionLocal() as session:
        return await media_ledger.list_pending(session, limit=args.limit, offset=args.offset)


_COMMANDS: dict[str, Callable[[argparse.Namespace], Awaitable[BaseModel]]] = {
    "reindex": _reindex,
    "enqueue-deletion": _enqueue_deletion,
    "gc": _gc,
    "audit": _audit,
    "pending": _pending,
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ebook media lifecycle jobs (cron friendly)")
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("reindex", help="Rebuild the usage ledger from the draft and all version snapshots")

    enqueue = subparsers.add_parser("enqueue-deletion", help="Schedule an unreferenced asset for deletion")
    enqueue.add_argument("media_key", help="Storage key or CDN URL of the asset")

    gc = subparsers.add_parser("gc", help="Run one garbage-collection batch over due candidates")
    gc.add_argument("--batch-size", type=int, default=None, help="Override MEDIA_GC_BATCH_SIZE for this run")

    subparsers.add_parser("audit", help="Report orphaned and missing objects (read-only)")

    pending = subparsers.add_parser("pending", help="List pending deletions ordered by due time")
    pending.add_argument("--limit", type=int, default=20)
    pending.add_argument("--offset", type=int, default=0)
    return parser


def _run_cli_command(args: argparse.Namespace) -> bool:
    handler = _COMMANDS.get(args.command or "")
    if handler is None:
        return False

    validate_runtime_settings(require_versions_bucket=args.command == "reindex")
    token = request_id_ctx_var.set(f"cli-{args.command}-{uuid.uuid4().hex[:12]}")
    try:
        result = asyncio.run(handler(args))
    except (MediaBackendUnavailableError, BlobStorageNotConfiguredError) as exc:
        logger.error("media_cli_backend_unavailable", extra={"command": args.command, "error": str(exc)})
        raise SystemExit(f"{args.command} aborted: {exc}") from exc
    except HTTPException as exc:
        raise SystemExit(f"{args.command} rejected: {exc.detail}") from exc
    finally:
        request_id_ctx_var.reset(token)
    print(result.model_dump_json(indent=2))
    return True


def main(argv: Sequence[str] | None = None) -> None:
    configure_logging(settings.log_json)
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command:
        init_sentry("cli")
    try:
        handled = _run_cli_command(args)
    except RuntimeError as exc:
        raise SystemExit(str(exc)) from exc
    if not handled:
        parser.print_help()


if __name__ == "__main__":
    main()
