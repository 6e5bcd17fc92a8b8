from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from .game_settings import get_starting_balance
from .models import PortfolioSnapshot, Position, User
from .pricing import percent_of, position_metrics, round_cents, to_decimal
from .quotes import PriceService, QuoteError

logger = logging.getLogger(__name__)


@dataclass
class PositionValue:
    position: Position
    shares: Decimal
    cost_basis: Decimal
    price: Decimal
    market_value: Decimal
    gain_loss: Decimal
    gain_loss_percent: Decimal


@dataclass
class PortfolioValuation:
    cash_balance: Decimal
    positions_value: Decimal
    total_value: Decimal
    total_gain_loss: Decimal
    total_gain_loss_percent: Decimal
    positions: list[PositionValue]


@dataclass
class RefreshResult:
    updated: int = 0
    total: int = 0
    errors: list[str] = field(default_factory=list)


def list_positions(db: Session, user_id: int, for_update: bool = False) -> list[Position]:
    stmt = select(Position).where(Position.user_id == user_id).order_by(Position.symbol.asc())
    if for_update:
        stmt = stmt.with_for_update()
    return list(db.execute(stmt).scalars().all())


def value_position(position: Position) -> PositionValue:
    shares = to_decimal(position.shares)
    cost_basis = to_decimal(position.purchase_price)
    price = to_decimal(position.price) or cost_basis
    market_value = round_cents(price * shares)
    gain_loss = round_cents((price - cost_basis) * shares)
    return PositionValue(
        position=position,
        shares=shares,
        cost_basis=cost_basis,
        price=price,
        market_value=market_value,
        gain_loss=gain_loss,
        gain_loss_percent=round_cents(percent_of(price - cost_basis, cost_basis)),
    )


def value_portfolio(
    db: Session,
    user: User,
    starting_balance: Decimal | None = None,
) -> PortfolioValuation:
    """Cash plus cached position values; gain/loss is measured against the starting balance."""
    if starting_balance is None:
        starting_balance = get_starting_balance(db)
    positions = [value_position(position) for position in list_positions(db, user.id)]
    cash = round_cents(to_decimal(user.cash_balance))
    positions_value = sum((value.market_value for value in positions), Decimal("0"))
    total_value = cash + positions_value
    gain_loss = total_value - starting_balance
    return PortfolioValuation(
        cash_balance=cash,
        positions_value=positions_value,
        total_value=total_value,
        total_gain_loss=gain_loss,
        total_gain_loss_percent=round_cents(percent_of(gain_loss, starting_balance)),
        positions=sorted(positions, key=lambda value: value.market_value, reverse=True),
    )


def record_portfolio_snapshot(db: Session, user: User, now: datetime | None = None) -> PortfolioSnapshot:
    valuation = value_portfolio(db, user)
    snapshot = PortfolioSnapshot(
        user_id=user.id,
        snapshot_date=now or datetime.utcnow(),
        total_value=float(valuation.total_value),
        cash_balance=float(valuation.cash_balance),
        positions_value=float(valuation.positions_value),
    )
    db.add(snapshot)
    db.flush()
    return snapshot


def refresh_portfolio_prices(
    db: Session,
    user: User,
    prices: PriceService,
    now: datetime | None = None,
) -> RefreshResult:
    positions = list_positions(db, user.id, for_update=True)
    result = RefreshResult(total=len(positions))
    for position in positions:
        symbol = str(position.symbol)
        try:
            quote = prices.resolve(
                db,
                symbol,
                reference_price=to_decimal(position.purchase_price),
                name=str(position.name),
            )
        except QuoteError as e:
            logger.warning("Price refresh failed for %s (user %s): %s", symbol, user.id, e)
            result.errors.append(f"{symbol}: {e}")
            continue

        change, change_percent, total_value = position_metrics(
            shares=to_decimal(position.shares),
            cost_basis=to_decimal(position.purchase_price),
            price=quote.price,
        )
        position.price = float(quote.price)
        position.change = float(change)
        position.change_percent = float(change_percent)
        position.total_value = float(total_value)
        result.updated += 1

    db.flush()
    record_portfolio_snapshot(db, user, now=now)
    return result


def portfolio_history(
    db: Session,
    user_id: int,
    days: int = 30,
    now: datetime | None = None,
) -> list[PortfolioSnapshot]:
    since = (now or datetime.utcnow()) - timedelta(days=days)
    return list(
        db.execute(
            select(PortfolioSnapshot)
            .where(PortfolioSnapshot.user_id == user_id, PortfolioSnapshot.snapshot_date >= since)
            .order_by(PortfolioSnapshot.snapshot_date.asc(), PortfolioSnapshot.id.asc())
        ).scalars().all()
    )
