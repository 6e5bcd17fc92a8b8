from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from .game_settings import get_starting_balance
from .market import get_market_settings
from .models import LeaderboardEntry, PortfolioSnapshot, User
from .portfolio import value_portfolio
from .pricing import percent_of, round_cents, to_decimal

logger = logging.getLogger(__name__)

PERFORMANCE_MONTHS = 24


@dataclass
class MonthlyPerformance:
    month: str  # YYYY-MM
    start_value: Decimal
    end_value: Decimal
    return_percent: Decimal


def update_leaderboard(db: Session, now: datetime | None = None) -> list[LeaderboardEntry]:
    """Recompute every user's total value and replace the stored ranking."""
    # Concurrent rebuilds queue on the market settings row lock.
    get_market_settings(db, for_update=True)
    starting_balance = get_starting_balance(db)
    updated_at = now or datetime.utcnow()

    valued: list[tuple[User, Decimal, Decimal, Decimal]] = []
    for user in db.execute(select(User).order_by(User.id.asc())).scalars().all():
        valuation = value_portfolio(db, user, starting_balance=starting_balance)
        valued.append(
            (
                user,
                valuation.total_value,
                valuation.total_gain_loss,
                valuation.total_gain_loss_percent,
            )
        )
    valued.sort(key=lambda row: (-row[1], row[0].id))

    db.execute(delete(LeaderboardEntry))
    entries: list[LeaderboardEntry] = []
    for rank, (user, total_value, gain_loss, gain_loss_percent) in enumerate(valued, start=1):
        entry = LeaderboardEntry(
            user_id=user.id,
            rank=rank,
            total_value=float(total_value),
            total_gain_loss=float(gain_loss),
            total_gain_loss_percent=float(gain_loss_percent),
            updated_at=updated_at,
        )
        db.add(entry)
        entries.append(entry)
    db.flush()
    logger.info("Leaderboard updated for %s users", len(entries))
    return entries


def ranked_entries(db: Session, limit: int) -> list[tuple[LeaderboardEntry, User]]:
    rows = db.execute(
        select(LeaderboardEntry, User)
        .join(User, User.id == LeaderboardEntry.user_id)
        .order_by(LeaderboardEntry.rank.asc())
        .limit(limit)
    ).all()
    return [(entry, user) for entry, user in rows]


def _month_key(moment: datetime) -> str:
    return f"{moment.year:04d}-{moment.month:02d}"


def _months_back(now: datetime, count: int) -> list[str]:
    year, month = now.year, now.month
    keys: list[str] = []
    for _ in range(count):
        keys.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            month = 12
            year -= 1
    return keys


def monthly_performance(
    db: Session,
    user_id: int,
    now: datetime | None = None,
    months: int = PERFORMANCE_MONTHS,
) -> list[MonthlyPerformance]:
    """
    Month-by-month return derived from portfolio snapshots, newest month first.

    A month's start value is its first snapshot and its end value its last one.
    Months without snapshots are omitted.
    """
    current = now or datetime.utcnow()
    wanted = set(_months_back(current, months))
    snapshots = db.execute(
        select(PortfolioSnapshot)
        .where(PortfolioSnapshot.user_id == user_id)
        .order_by(PortfolioSnapshot.snapshot_date.asc(), PortfolioSnapshot.id.asc())
    ).scalars().all()

    by_month: dict[str, list[PortfolioSnapshot]] = {}
    for snapshot in snapshots:
        key = _month_key(snapshot.snapshot_date)
        if key in wanted:
            by_month.setdefault(key, []).append(snapshot)

    performance: list[MonthlyPerformance] = []
    for key in sorted(by_month.keys(), reverse=True):
        rows = by_month[key]
        start_value = round_cents(to_decimal(rows[0].total_value))
        end_value = round_cents(to_decimal(rows[-1].total_value))
        performance.append(
            MonthlyPerformance(
                month=key,
                start_value=start_value,
                end_value=end_value,
                return_percent=round_cents(percent_of(end_value - start_value, start_value)),
            )
        )
    return performance
