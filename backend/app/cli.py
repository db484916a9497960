import argparse
import asyncio
import json
import uuid

from app.core.logging_config import configure_logging
from app.core.config import settings
from app.db.session import SessionLocal
from app.services import batches, order_sync
from app.services.promotion_rules import PromotionRuleError, client_for_merchant


def _parse_uuid(raw: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(raw or "").strip())
    except ValueError:
        raise SystemExit(f"Invalid batch id: {raw!r}")


def _print(payload: dict) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


async def reconcile_batches(limit: int) -> dict:
    async with SessionLocal() as session:
        return await batches.reconcile_pending_batches(session, client_for_merchant, limit=limit)


async def retry_batch(batch_id: uuid.UUID) -> dict:
    async with SessionLocal() as session:
        loaded = await batches.load_batch(session, batch_id)
        if loaded is None:
            raise SystemExit(f"Batch not found: {batch_id}")
        _, discount_set = loaded
        try:
            client = await client_for_merchant(session, discount_set.merchant_id)
        except PromotionRuleError as exc:
            raise SystemExit(str(exc))
        outcome = await batches.retry_batch_sync(session, client, batch_id)
        result = outcome.value if outcome.ok else outcome.data
        return {
            "ok": outcome.ok,
            "batch_id": str(batch_id),
            "sync_status": result.batch.sync_status.value if result else None,
            "codes": len(result.created) if result else 0,
            "error": None if outcome.ok else outcome.detail,
        }


async def sync_orders(shop: str) -> dict:
    async with SessionLocal() as session:
        try:
            client = await client_for_merchant(session, shop)
        except PromotionRuleError as exc:
            raise SystemExit(str(exc))
        outcome = await order_sync.sync_recent_orders(session, client, shop)
        if not outcome.ok:
            return {"success": False, "error": outcome.detail}
        summary = outcome.value
        return {
            "success": True,
            "ordersChecked": summary.orders_checked,
            "attributed": summary.attributed,
            "skipped": summary.skipped,
        }


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Discount code engine maintenance commands")
    subparsers = parser.add_subparsers(dest="command")

    reconcile = subparsers.add_parser("reconcile-batches", help="Re-push every batch stuck in pending/failed sync")
    reconcile.add_argument("--limit", type=int, default=settings.batch_reconcile_limit, help="Maximum batches")

    retry = subparsers.add_parser("retry-batch", help="Re-push one batch to the platform")
    retry.add_argument("batch_id", help="Batch UUID")

    sync = subparsers.add_parser("sync-orders", help="Credit recent platform orders for one shop")
    sync.add_argument("shop", help="Shop domain, e.g. example.myshopify.com")
    return parser


def _run_cli_command(args: argparse.Namespace) -> bool:
    if args.command == "reconcile-batches":
        _print(asyncio.run(reconcile_batches(max(1, int(args.limit)))))
        return True

    if args.command == "retry-batch":
        _print(asyncio.run(retry_batch(_parse_uuid(args.batch_id))))
        return True

    if args.command == "sync-orders":
        shop = (args.shop or "").strip().lower()
        if not shop:
            raise SystemExit("Shop is required")
        _print(asyncio.run(sync_orders(shop)))
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
