"""CLI command for reconciling daily spend aggregates against the ledger.

Usage:
    python -m manyfutures.cli [OPTIONS]

Examples:
    # Reconcile yesterday (UTC) for every subscription with spend
    python -m manyfutures.cli

    # Reconcile one day for one subscription
    python -m manyfutures.cli --day 2026-10-18 --subscription-id <uuid>

    # Report drift without writing
    python -m manyfutures.cli --dry-run

    # Verbose logging
    python -m manyfutures.cli -v
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Callable, Sequence
from uuid import UUID

import structlog

from manyfutures.core import timezone  # noqa: F401
from manyfutures.core.config import Settings, configure_logging
from manyfutures.core.database import setup_db_session
from manyfutures.core.timezone import utcnow
from manyfutures.services.cost_governor import CostGovernor, ReconcileResult
from manyfutures.uow import create_uow_factory

logger = structlog.get_logger()


@dataclass
class ReconcileSummary:
    """Outcome of one reconciliation run."""

    spend_date: date
    results: list[ReconcileResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def drifted(self) -> list[ReconcileResult]:
        return [result for result in self.results if result.has_drift]


def parse_args(argv: Sequence[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Reconcile daily spend aggregates against the spend ledger",
        epilog="Aggregates are overwritten with the ledger sum unless --dry-run is given",
    )

    parser.add_argument(
        "--day",
        type=date.fromisoformat,
        help="UTC day to reconcile, YYYY-MM-DD (default: yesterday)",
    )

    parser.add_argument(
        "--subscription-id",
        type=UUID,
        help="Only reconcile this subscription (default: all with spend that day)",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report drift without database writes",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


async def reconcile_day(
    uow_factory: Callable,
    governor: CostGovernor,
    day: date,
    subscription_id: UUID | None = None,
    dry_run: bool = False,
) -> ReconcileSummary:
    """Reconcile every subscription with spend on ``day`` (or just one).

    Each subscription is reconciled in its own transaction, so one failure does
    not roll back the others.
    """
    summary = ReconcileSummary(spend_date=day)

    if subscription_id is not None:
        subscription_ids = [subscription_id]
    else:
        async with await uow_factory() as uow:
            subscription_ids = await uow.spend.list_subscriptions_with_spend(day)

    for sub_id in subscription_ids:
        try:
            async with await uow_factory() as uow:
                result = await governor.reconcile(uow, sub_id, day, utcnow(), dry_run=dry_run)
            summary.results.append(result)
        except Exception as e:
            logger.error(
                "cli.reconcile_failed",
                subscription_id=str(sub_id),
                error=str(e),
                error_type=type(e).__name__,
            )
            summary.errors.append(f"{sub_id}: {e}")

    return summary


def print_summary(summary: ReconcileSummary, dry_run: bool) -> None:
    print("\n" + "=" * 60)
    print(f"Spend Reconciliation Summary ({summary.spend_date.isoformat()})")
    print("=" * 60)
    print(f"Subscriptions checked: {len(summary.results)}")
    print(f"Aggregates with drift: {len(summary.drifted)}")
    for result in summary.drifted[:10]:
        print(
            f"  - {result.subscription_id}: aggregate={result.aggregate_total} "
            f"ledger={result.ledger_total} drift={result.drift}"
        )

    if summary.errors:
        print(f"\nErrors encountered: {len(summary.errors)}")
        for error in summary.errors[:5]:
            print(f"  - {error}")

    if dry_run:
        print("\n[DRY RUN] No changes were persisted to database")
    print("=" * 60 + "\n")


async def async_main(argv: Sequence[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (no drift, or drift repaired), 1 (error or unrepaired drift)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    day = args.day or (utcnow().date() - timedelta(days=1))
    logger.info(
        "cli.started",
        day=day.isoformat(),
        subscription_id=str(args.subscription_id) if args.subscription_id else None,
        dry_run=args.dry_run,
    )

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    try:
        summary = await reconcile_day(
            uow_factory,
            CostGovernor(settings),
            day,
            subscription_id=args.subscription_id,
            dry_run=args.dry_run,
        )
    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nReconciliation interrupted by user", file=sys.stderr)
        return 130
    except Exception as e:
        logger.error("cli.unexpected_error", error=str(e), error_type=type(e).__name__)
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1

    print_summary(summary, args.dry_run)

    if summary.errors:
        logger.error("cli.failure", errors=len(summary.errors))
        return 1
    if args.dry_run and summary.drifted:
        logger.warning("cli.drift_detected", drifted=len(summary.drifted))
        return 1

    logger.info("cli.success", checked=len(summary.results), repaired=len(summary.drifted))
    return 0


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
