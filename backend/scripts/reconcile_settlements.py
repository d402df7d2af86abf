"""Re-issue creator payouts parked in settlement_failures.

Standalone script, intended for a periodic job. Each unresolved failure
is retried in its own SAVEPOINT: success issues the creator's bonus grant
and marks the failure resolved, another failure bumps its attempt count.

Usage:
    cd backend && python -m scripts.reconcile_settlements [--limit N]
"""

import argparse
import logging

from app.repositories.grant_store import GrantStore
from app.services.settlement_service import ReconciliationStats, SettlementService

logger = logging.getLogger(__name__)

_DEFAULT_LIMIT = 100


async def run_reconciliation(
    store: GrantStore, *, limit: int = _DEFAULT_LIMIT
) -> ReconciliationStats:
    """Drain up to `limit` unresolved payout failures.

    Args:
        store: Grant store holding the dead-letter records.
        limit: Maximum failures to process.

    Returns:
        ReconciliationStats for the run.
    """
    if limit <= 0:
        raise ValueError(f"limit must be positive. Got: {limit}")
    return await SettlementService(store).retry_failed(limit=limit)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument(
        "--limit",
        type=int,
        default=_DEFAULT_LIMIT,
        help="maximum failures to process (default: %(default)s)",
    )
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> None:
    """CLI entry point: reconcile against the configured database."""
    import sys

    from app.core.config import settings
    from app.core.database import engine, session_scope
    from app.repositories.grant_repository import GrantRepository

    args = _parse_args(argv)

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    async with session_scope() as session:
        result = await run_reconciliation(GrantRepository(session), limit=args.limit)

    await engine.dispose()

    logger.info("Final stats: %s", result)
    sys.exit(1 if result.still_failing else 0)


if __name__ == "__main__":
    import asyncio

    asyncio.run(main())
