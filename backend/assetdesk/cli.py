import argparse
import asyncio
import json
import uuid
from typing import Any, Dict

import anyio

from assetdesk.core.config import settings
from assetdesk.core.logging_config import configure_logging
from assetdesk.db.session import SessionLocal
from assetdesk.models.asset import Asset
from assetdesk.services import render_jobs
from assetdesk.services.pdf_render import StoragePageCounter
from assetdesk.services.storage import get_storage
from assetdesk.workers.render_worker import run_render_worker


def _parse_asset_id(raw: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(raw).strip())
    except ValueError:
        raise SystemExit(f"Invalid asset id: {raw}")


async def _load_asset(session, asset_id: uuid.UUID) -> Asset:
    asset = await session.get(Asset, asset_id)
    if asset is None:
        raise SystemExit(f"Asset not found: {asset_id}")
    return asset


async def detect_page_count(asset_id: uuid.UUID, *, force: bool = False) -> Dict[str, Any]:
    async with SessionLocal() as session:
        asset = await _load_asset(session, asset_id)
        counter = StoragePageCounter(get_storage())
        count = int(await anyio.to_thread.run_sync(lambda: counter(asset, force_detect=force)) or 0)
        if count > 0:
            # A stored count is never replaced; --force only re-checks the file.
            if not asset.pdf_page_count:
                asset.pdf_page_count = count
            render_jobs.apply_large_pdf_guardrail(asset, count)
            session.add(asset)
            await session.commit()
        return {
            "asset_id": str(asset.id),
            "page_count": count,
            "stored_page_count": asset.pdf_page_count,
            "unsupported_large": bool(asset.pdf_unsupported_large),
        }


async def render_page(asset_id: uuid.UUID, page: int) -> Dict[str, Any]:
    if int(page) < 1:
        raise SystemExit("Page must be >= 1")
    async with SessionLocal() as session:
        asset = await _load_asset(session, asset_id)
        job = await render_jobs.enqueue_page_render(session, asset=asset, page=page, max_attempts=1)
        await session.commit()
        job = await render_jobs.process_job_inline(session, job)
        return {
            "job_id": str(job.id),
            "status": job.status.value,
            "storage_key": job.storage_key,
            "error": job.error_message,
        }


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="PDF page rendering utilities")
    subparsers = parser.add_subparsers(dest="command")

    count_parser = subparsers.add_parser("page-count", help="Detect and store the page count of a PDF asset")
    count_parser.add_argument("asset_id")
    count_parser.add_argument("--force", action="store_true", help="Re-detect even when a count is stored")

    render_parser = subparsers.add_parser("render-page", help="Render one page synchronously")
    render_parser.add_argument("asset_id")
    render_parser.add_argument("page", type=int)

    worker_parser = subparsers.add_parser("worker", help="Run the render job worker")
    worker_parser.add_argument("--poll-interval", type=float, default=2.0)
    return parser


def _print_json(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def _run_cli_command(args: argparse.Namespace) -> bool:
    if args.command == "page-count":
        _print_json(asyncio.run(detect_page_count(_parse_asset_id(args.asset_id), force=bool(args.force))))
        return True

    if args.command == "render-page":
        _print_json(asyncio.run(render_page(_parse_asset_id(args.asset_id), int(args.page))))
        return True

    if args.command == "worker":
        asyncio.run(run_render_worker(poll_interval_seconds=float(args.poll_interval)))
        return True

    return False


def main():
    configure_logging(settings.log_json)
    parser = _build_parser()
    args = parser.parse_args()
    if not _run_cli_command(args):
        parser.print_help()


if __name__ == "__main__":
    main()
