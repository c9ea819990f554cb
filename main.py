"""
Trade Journal - Metrics Refresh Entry Point

Recomputes a user's portfolio metrics, writes the recomputed trade fields
back to the trade store and appends a capital snapshot to the ledger.

Usage:
    # Initialize database
    python main.py --init-db

    # Check configuration
    python main.py --check

    # Refresh metrics for a user
    python main.py --user-id alice

    # Refresh with an explicit starting capital
    python main.py --user-id alice --starting-capital 50000
"""

import argparse
import asyncio
import json
import sys
from decimal import Decimal
from typing import Dict, Optional

import structlog

from tradejournal.core.config import journal_config
from tradejournal.core.engine import PortfolioMetricsEngine
from tradejournal.core.models import PortfolioMetrics
from tradejournal.market_data.quote_cache import QuoteCache
from tradejournal.market_data.series_cache import SeriesCache
from tradejournal.market_data.sources import (create_quote_source,
                                              create_series_source)
from tradejournal.storage.database import Database
from tradejournal.utils.logging_config import setup_logging

logger = structlog.get_logger(__name__)


def check_configuration() -> Dict:
    """Check configuration and report issues."""
    issues = []
    market_data = journal_config.market_data

    if market_data.provider == "script" and not market_data.is_script_configured:
        issues.append("MARKET_DATA_SCRIPT_URL is not set")
    if journal_config.quote_cache.stale_tolerance_seconds < journal_config.quote_cache.ttl_seconds:
        issues.append("QUOTE_STALE_TOLERANCE_SECONDS is shorter than QUOTE_CACHE_TTL_SECONDS")

    return {
        "valid": not issues,
        "issues": issues,
        "provider": market_data.provider,
        "database_url": journal_config.database.database_url,
        "default_starting_capital": str(journal_config.metrics.default_starting_capital),
    }


def summarize(metrics: PortfolioMetrics) -> Dict:
    """Compact, JSON-friendly summary of a metrics run."""
    performance = metrics.performance
    return {
        "user_id": metrics.user_id,
        "status": metrics.status.value,
        "warnings": metrics.warnings,
        "starting_capital": str(metrics.starting_capital),
        "current_capital": str(metrics.current_capital),
        "open_trades": metrics.open_trades,
        "closed_trades": metrics.closed_trades,
        "win_rate": str(performance.win_rate),
        "profit_factor": str(performance.profit_factor),
        "expectancy": str(performance.expectancy),
        "current_streak": metrics.streaks.current,
        "max_drawdown": str(metrics.max_drawdown),
        "max_runup": str(metrics.max_runup),
        "open_exposure_delta": str(metrics.exposure.open_delta),
        "sharpe_ratio": metrics.risk_adjusted.sharpe_ratio,
    }


async def refresh_user(user_id: str, starting_capital: Optional[Decimal] = None) -> Dict:
    """Run one metrics refresh cycle for a user."""
    database = Database()
    await database.initialize()

    engine = PortfolioMetricsEngine(
        quote_cache=QuoteCache(create_quote_source(journal_config.market_data)),
        series_cache=SeriesCache(create_series_source(journal_config.market_data)),
        trade_store=database,
        settings_store=database,
        capital_ledger=database,
        config=journal_config.metrics,
    )

    try:
        await engine.initialize()
        metrics = await engine.refresh(user_id, starting_capital=starting_capital)
    finally:
        await engine.close()
        await database.close()

    return summarize(metrics)


async def init_database():
    """Create database tables."""
    database = Database()
    try:
        await database.initialize()
    finally:
        await database.close()


async def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Trade Journal - portfolio metrics refresh"
    )
    parser.add_argument("--user-id", help="Refresh metrics for this user")
    parser.add_argument(
        "--starting-capital", type=Decimal, help="Override the starting capital"
    )
    parser.add_argument(
        "--check", action="store_true", help="Check configuration and exit"
    )
    parser.add_argument(
        "--init-db", action="store_true", help="Initialize database and exit"
    )

    args = parser.parse_args()

    setup_logging()

    if args.check:
        result = check_configuration()
        print(json.dumps(result, indent=2))
        return 0 if result["valid"] else 1

    if args.init_db:
        await init_database()
        print("Database initialized")
        return 0

    if not args.user_id:
        parser.error("--user-id is required")

    summary = await refresh_user(args.user_id, args.starting_capital)
    print(json.dumps(summary, indent=2))
    return 0 if summary["status"] != "failed" else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
