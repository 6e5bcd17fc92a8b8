import argparse
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

# Ensure `import stocksim.*` works when running from the repo root.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from sqlalchemy import select  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from stocksim.db import DATABASE_URL, SessionLocal, redact_database_url  # noqa: E402
from stocksim.leaderboard import update_leaderboard  # noqa: E402
from stocksim.market import get_market_settings, market_status  # noqa: E402
from stocksim.models import User  # noqa: E402
from stocksim.orders import execute_pending_orders  # noqa: E402
from stocksim.portfolio import refresh_portfolio_prices  # noqa: E402
from stocksim.quotes import PriceService, get_price_service  # noqa: E402


@dataclass
class CycleCounts:
    market_open: bool = False
    orders_processed: int = 0
    orders_executed: int = 0
    orders_cancelled: int = 0
    portfolios_refreshed: int = 0
    positions_updated: int = 0
    price_errors: list[str] = field(default_factory=list)
    leaderboard_entries: int = 0


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def log(message: str) -> None:
    print(f"[{now_iso()}] {message}", flush=True)


def run_cycle(db: Session, prices: PriceService, now: datetime | None = None) -> CycleCounts:
    counts = CycleCounts()
    status = market_status(get_market_settings(db), now=now)
    counts.market_open = status.is_open

    if status.is_open:
        summary = execute_pending_orders(db, prices, now=now)
        counts.orders_processed = summary.processed
        counts.orders_executed = summary.executed
        counts.orders_cancelled = summary.cancelled
        db.commit()

        user_ids = db.execute(select(User.id).order_by(User.id.asc())).scalars().all()
        for user_id in user_ids:
            user = db.execute(select(User).where(User.id == user_id).with_for_update()).scalar_one()
            result = refresh_portfolio_prices(db, user, prices)
            counts.portfolios_refreshed += 1
            counts.positions_updated += result.updated
            counts.price_errors.extend(result.errors)
            db.commit()

    counts.leaderboard_entries = len(update_leaderboard(db))
    db.commit()
    return counts


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Execute queued orders and refresh portfolio prices while the simulated market is open, "
            "then rebuild the leaderboard."
        )
    )
    parser.add_argument("--interval-seconds", type=int, default=60, help="Polling interval for continuous mode")
    parser.add_argument("--once", action="store_true", help="Run one cycle and exit")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    if args.interval_seconds <= 0:
        print("[error] --interval-seconds must be > 0")
        return 1

    prices = get_price_service()
    log(
        f"market worker starting database={redact_database_url(DATABASE_URL)}"
        + ("" if args.once else f" interval={args.interval_seconds}s")
    )
    cycles_with_failures = 0
    cycle_index = 0
    while True:
        cycle_index += 1
        db = SessionLocal()
        try:
            counts = run_cycle(db, prices)
            log(
                "cycle="
                + str(cycle_index)
                + f" market_open={counts.market_open}"
                + f" processed={counts.orders_processed}"
                + f" executed={counts.orders_executed}"
                + f" cancelled={counts.orders_cancelled}"
                + f" portfolios={counts.portfolios_refreshed}"
                + f" positions={counts.positions_updated}"
                + f" price_errors={len(counts.price_errors)}"
                + f" ranked={counts.leaderboard_entries}"
            )
            if counts.price_errors:
                cycles_with_failures += 1
        except Exception as exc:
            db.rollback()
            cycles_with_failures += 1
            log(f"[error] cycle={cycle_index} failed: {exc}")
        finally:
            db.close()

        if args.once:
            break
        time.sleep(args.interval_seconds)

    return 0 if cycles_with_failures == 0 else 2


if __name__ == "__main__":
    raise SystemExit(main())
