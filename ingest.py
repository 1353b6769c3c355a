#!/usr/bin/env python3
"""Command-line entry point for order ingestion.

Usage:
    python ingest.py orders.json --user-id U              # Ingest a JSON export
    python ingest.py orders.json --user-id U --dry-run    # Report without writing
    python ingest.py --stats                              # Show ingestion statistics
"""

import argparse
import asyncio
import json
import logging
import sys
import uuid
from contextlib import AsyncExitStack
from pathlib import Path
from typing import Any, List, Optional

from pythonjsonlogger import jsonlogger

from order_ingestion.config import Settings, get_settings
from order_ingestion.constants import CANONICAL_MARKETPLACE_ID
from order_ingestion.database import Database
from order_ingestion.engine import IngestionEngine, IngestionOptions, IngestionReport
from order_ingestion.invoice_sync import InvoiceSyncCoordinator
from order_ingestion.mappers import CanonicalPayloadMapper, MapperRegistry
from order_ingestion.models import TenantKey
from order_ingestion.repository import SQLiteOrderRepository
from order_ingestion.xero_client import XeroAPIError, XeroClient
from order_ingestion.xero_invoices import XeroInvoiceProvider

logger = logging.getLogger(__name__)


def setup_logging(settings: Settings) -> None:
    """Configure console and JSON file logging.

    Args:
        settings: Application settings
    """
    settings.log_file.parent.mkdir(parents=True, exist_ok=True)

    console_formatter = logging.Formatter(
        "%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    json_formatter = jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(console_formatter)

    # JSON so the file can be parsed
    file_handler = logging.FileHandler(settings.log_file)
    file_handler.setFormatter(json_formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    # The Xero SDK logs every request at DEBUG
    logging.getLogger("xero_python").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def load_orders(path: Path) -> List[Any]:
    """Read raw orders from a JSON file.

    Accepts a list of orders or an object with an "orders" list.
    """
    with open(path, "r") as f:
        data = json.load(f)

    if isinstance(data, dict) and "orders" in data:
        data = data["orders"]
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a list of orders")
    return data


def build_registry() -> MapperRegistry:
    registry = MapperRegistry()
    registry.register(CANONICAL_MARKETPLACE_ID, CanonicalPayloadMapper())
    return registry


def options_from_args(args: argparse.Namespace, settings: Settings) -> IngestionOptions:
    """Settings give the defaults; command-line flags override them."""
    options = IngestionOptions.from_settings(settings)
    if args.dry_run:
        options.dry_run = True
    if args.no_invoices:
        options.create_invoices = False
    if args.skip_existing:
        options.skip_existing = True
    if args.no_update:
        options.update_existing = False
    return options


def log_report(report: IngestionReport) -> None:
    logger.info("=" * 60)
    logger.info("Ingestion Complete" if report.success else "Ingestion Failed")
    logger.info("=" * 60)
    logger.info(f"  Created: {report.created}")
    logger.info(f"  Updated: {report.updated}")
    logger.info(f"  Skipped: {report.skipped}")
    logger.info(f"  Invoices created: {report.invoices_created}")
    logger.info(f"  Invoices failed: {report.invoices_failed}")
    logger.info(f"  Errors: {len(report.errors)}")

    if report.errors:
        logger.warning("Errors encountered:")
        for error in report.errors[:10]:
            logger.warning(f"  - {error}")
        if len(report.errors) > 10:
            logger.warning(f"  ... and {len(report.errors) - 10} more")


def show_stats(database: Database) -> None:
    stats = database.get_stats()
    logger.info("Ingestion Statistics:")
    logger.info(f"  Orders by marketplace: {stats.get('orders', {})}")
    logger.info(f"  Invoice pushes by status: {stats.get('invoice_push', {})}")
    last_run = stats.get("last_run")
    if last_run:
        logger.info(f"  Last run: {last_run['run_id']} ({last_run['status']}) at {last_run['started_at']}")
    else:
        logger.info("  Last run: Never")


async def run_ingest(args: argparse.Namespace, settings: Optional[Settings] = None) -> int:
    """Run the ingestion.

    Args:
        args: Command line arguments
        settings: Settings to use instead of loading them from the environment

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    if settings is None:
        try:
            settings = get_settings()
        except Exception as e:
            logger.error(f"Failed to load settings: {e}")
            logger.error("Check the environment variables or .env file")
            return 1
        setup_logging(settings)

    database = Database(settings.database_path)

    if args.stats:
        show_stats(database)
        return 0

    if not args.orders_file:
        logger.error("An orders file is required unless --stats is given")
        return 1
    if not (args.user_id or args.organization_id):
        logger.error("--user-id or --organization-id is required")
        return 1

    try:
        raw_orders = load_orders(args.orders_file)
    except (OSError, ValueError) as e:
        logger.error(f"Failed to read orders from {args.orders_file}: {e}")
        return 1

    options = options_from_args(args, settings)
    tenant = TenantKey(user_id=args.user_id, organization_id=args.organization_id)
    concurrency = args.concurrency or settings.max_concurrency
    timeout = args.timeout or settings.batch_timeout

    logger.info("=" * 60)
    logger.info(f"Order Ingestion Starting ({len(raw_orders)} orders, tenant {tenant})")
    logger.info("=" * 60)

    repository = SQLiteOrderRepository(database)
    run_id = uuid.uuid4().hex
    if not options.dry_run:
        database.start_run(run_id, args.marketplace)

    try:
        async with AsyncExitStack() as stack:
            invoice_sync = None
            if options.create_invoices and settings.xero_enabled:
                xero_client = await stack.enter_async_context(XeroClient(settings))
                if not await xero_client.check_connection():
                    raise XeroAPIError("Failed to connect to Xero API")
                provider = XeroInvoiceProvider(xero_client, settings.invoice_reference_prefix)
                invoice_sync = InvoiceSyncCoordinator(repository, provider)
            elif options.create_invoices:
                logger.info("Xero credentials not configured, invoices will not be created")

            engine = IngestionEngine(
                repository=repository,
                mappers=build_registry(),
                invoice_sync=invoice_sync,
                max_concurrency=concurrency,
                options=options,
            )
            report = await asyncio.wait_for(
                engine.ingest(args.marketplace, tenant, raw_orders),
                timeout=timeout,
            )
    except asyncio.TimeoutError:
        logger.error(f"Ingestion timed out after {timeout}s")
        if not options.dry_run:
            database.complete_run(run_id, "failed", errors=[f"Timed out after {timeout}s"])
        return 1
    except Exception as e:
        logger.error(f"Ingestion failed: {e}")
        if not options.dry_run:
            database.complete_run(run_id, "failed", errors=[str(e)])
        return 1

    log_report(report)

    if not options.dry_run:
        database.complete_run(
            run_id,
            "failed" if report.has_errors else "success",
            created=report.created,
            updated=report.updated,
            skipped=report.skipped,
            invoices_created=report.invoices_created,
            errors=[str(error) for error in report.errors],
        )

    return 1 if report.has_errors else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Ingest marketplace orders and push invoices to Xero",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python ingest.py orders.json --user-id U1                 Ingest orders for user U1
  python ingest.py orders.json --user-id U1 --dry-run       Report without writing
  python ingest.py orders.json --organization-id O1 --no-invoices
  python ingest.py --stats                                  Show ingestion statistics
        """,
    )

    parser.add_argument(
        "orders_file",
        nargs="?",
        type=Path,
        help="JSON file with a list of raw orders",
    )
    parser.add_argument(
        "--marketplace",
        default=CANONICAL_MARKETPLACE_ID,
        help="Marketplace ID the orders come from (default: %(default)s)",
    )
    parser.add_argument("--user-id", help="User the orders belong to")
    parser.add_argument("--organization-id", help="Organization the orders belong to")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Decide and count, but don't write orders or create invoices",
    )
    parser.add_argument(
        "--no-invoices",
        action="store_true",
        help="Don't push invoices to Xero",
    )
    parser.add_argument(
        "--skip-existing",
        action="store_true",
        help="Skip orders that are already stored, even if they changed",
    )
    parser.add_argument(
        "--no-update",
        action="store_true",
        help="Don't update stored orders that changed",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        help="Number of orders processed at the same time",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        help="Abort the batch after this many seconds",
    )
    parser.add_argument(
        "--stats",
        action="store_true",
        help="Show ingestion statistics and exit",
    )
    return parser


def main() -> None:
    """Main entry point."""
    args = build_parser().parse_args()
    exit_code = asyncio.run(run_ingest(args))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
