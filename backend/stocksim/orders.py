from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

import pytz
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .game_settings import get_daily_trading_limit
from .market import get_market_settings, market_status
from .models import (
    ORDER_CANCELLED,
    ORDER_EXECUTED,
    ORDER_PENDING,
    Position,
    QueuedOrder,
    Transaction,
    User,
)
from .pricing import position_metrics, round_cents, to_decimal, weighted_average_cost
from .quotes import PriceService, Quote, QuoteError

logger = logging.getLogger(__name__)

BUY = "BUY"
SELL = "SELL"
ORDER_TYPES = (BUY, SELL)


class OrderRejected(Exception):
    """Raised when an order breaks a trading rule; the message is user-facing."""

    pass


@dataclass
class OrderResult:
    status: str  # EXECUTED or QUEUED
    symbol: str
    name: str
    order_type: str
    shares: Decimal
    price: Decimal
    total: Decimal
    price_source: str
    cash_balance: Decimal
    order: QueuedOrder | None = None
    position: Position | None = None


@dataclass
class ExecutionSummary:
    market_open: bool
    processed: int = 0
    executed: int = 0
    cancelled: int = 0
    executed_order_ids: list[int] = field(default_factory=list)
    cancelled_order_ids: list[int] = field(default_factory=list)


def utc_naive(now: datetime | None) -> datetime:
    if now is None:
        return datetime.utcnow()
    if now.tzinfo is None:
        return now
    return now.astimezone(pytz.utc).replace(tzinfo=None)


def lock_user(db: Session, user_id: int) -> User:
    user = db.execute(select(User).where(User.id == user_id).with_for_update()).scalar_one_or_none()
    if user is None:
        raise OrderRejected("User not found.")
    return user


def get_position(db: Session, user_id: int, symbol: str, for_update: bool = False) -> Position | None:
    stmt = select(Position).where(Position.user_id == user_id, Position.symbol == symbol)
    if for_update:
        stmt = stmt.with_for_update()
    return db.execute(stmt).scalar_one_or_none()


def trades_placed_today(db: Session, user_id: int, now: datetime) -> int:
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    day_end = day_start + timedelta(days=1)
    executed = db.execute(
        select(func.count())
        .select_from(Transaction)
        .where(
            Transaction.user_id == user_id,
            Transaction.source == "MARKET",
            Transaction.created_at >= day_start,
            Transaction.created_at < day_end,
        )
    ).scalar_one()
    queued = db.execute(
        select(func.count())
        .select_from(QueuedOrder)
        .where(
            QueuedOrder.user_id == user_id,
            QueuedOrder.created_at >= day_start,
            QueuedOrder.created_at < day_end,
        )
    ).scalar_one()
    return int(executed) + int(queued)


def pending_buy_commitment(db: Session, user_id: int, exclude_order_id: int | None = None) -> Decimal:
    stmt = select(QueuedOrder.shares, QueuedOrder.order_price).where(
        QueuedOrder.user_id == user_id,
        QueuedOrder.order_type == BUY,
        QueuedOrder.status == ORDER_PENDING,
    )
    if exclude_order_id is not None:
        stmt = stmt.where(QueuedOrder.id != exclude_order_id)
    total = Decimal("0")
    for shares, order_price in db.execute(stmt).all():
        total += to_decimal(shares) * to_decimal(order_price)
    return total


def pending_sell_shares(
    db: Session,
    user_id: int,
    symbol: str,
    exclude_order_id: int | None = None,
) -> Decimal:
    stmt = select(func.coalesce(func.sum(QueuedOrder.shares), 0)).where(
        QueuedOrder.user_id == user_id,
        QueuedOrder.symbol == symbol,
        QueuedOrder.order_type == SELL,
        QueuedOrder.status == ORDER_PENDING,
    )
    if exclude_order_id is not None:
        stmt = stmt.where(QueuedOrder.id != exclude_order_id)
    return to_decimal(db.execute(stmt).scalar_one())


def refresh_position_fields(position: Position, price: Decimal) -> None:
    shares = to_decimal(position.shares)
    change, change_percent, total_value = position_metrics(
        shares=shares,
        cost_basis=to_decimal(position.purchase_price),
        price=price,
    )
    position.price = float(price)
    position.change = float(change)
    position.change_percent = float(change_percent)
    position.total_value = float(total_value)


def apply_buy(
    db: Session,
    user: User,
    symbol: str,
    name: str,
    shares: Decimal,
    price: Decimal,
    source: str,
    at: datetime | None = None,
) -> Position:
    cost = round_cents(price * shares)
    cash = to_decimal(user.cash_balance)
    if cost > cash:
        raise OrderRejected(f"Insufficient funds. Need {float(cost):.2f}, have {float(cash):.2f}")

    position = get_position(db, user.id, symbol, for_update=True)
    if position is None:
        position = Position(
            user_id=user.id,
            symbol=symbol,
            name=name,
            shares=0,
            purchase_price=float(price),
        )
        db.add(position)

    held = to_decimal(position.shares)
    position.purchase_price = float(
        weighted_average_cost(held, to_decimal(position.purchase_price), shares, price)
    )
    position.shares = float(held + shares)
    if name and name != symbol:
        position.name = name
    refresh_position_fields(position, price)

    user.cash_balance = float(cash - cost)
    db.add(
        Transaction(
            user_id=user.id,
            symbol=symbol,
            type=BUY,
            shares=float(shares),
            unit_price=float(price),
            amount=float(-cost),
            source=source,
            created_at=at or datetime.utcnow(),
        )
    )
    db.flush()
    return position


def apply_sell(
    db: Session,
    user: User,
    position: Position,
    shares: Decimal,
    price: Decimal,
    source: str,
    at: datetime | None = None,
) -> Position | None:
    owned = to_decimal(position.shares)
    if shares > owned:
        raise OrderRejected(f"Trying to sell {float(shares):.0f} but only own {float(owned):.0f}")

    proceeds = round_cents(price * shares)
    user.cash_balance = float(to_decimal(user.cash_balance) + proceeds)
    db.add(
        Transaction(
            user_id=user.id,
            symbol=position.symbol,
            type=SELL,
            shares=float(shares),
            unit_price=float(price),
            amount=float(proceeds),
            source=source,
            created_at=at or datetime.utcnow(),
        )
    )

    remaining = owned - shares
    if remaining <= 0:
        db.delete(position)
        db.flush()
        return None

    position.shares = float(remaining)
    refresh_position_fields(position, price)
    db.flush()
    return position


def place_order(
    db: Session,
    user_id: int,
    order_type: str,
    symbol: str,
    shares: int,
    prices: PriceService,
    name: str | None = None,
    now: datetime | None = None,
) -> OrderResult:
    """
    Buy or sell `shares` of `symbol` for a user.

    Executes immediately while the simulated market is open; otherwise the order
    is stored as PENDING at the current reference price and executed later by
    execute_pending_orders.
    """
    if order_type not in ORDER_TYPES:
        raise OrderRejected(f"Unknown order type '{order_type}'.")
    qty = Decimal(int(shares))
    if qty <= 0:
        raise OrderRejected("shares must be > 0")

    moment = utc_naive(now)
    user = lock_user(db, user_id)

    limit = get_daily_trading_limit(db)
    if trades_placed_today(db, user.id, moment) >= limit:
        raise OrderRejected(f"Daily trading limit of {limit} trades reached.")

    position = get_position(db, user.id, symbol, for_update=True)
    if order_type == SELL:
        if position is None or to_decimal(position.shares) <= 0:
            raise OrderRejected("No shares to sell")
        available = to_decimal(position.shares) - pending_sell_shares(db, user.id, symbol)
        if qty > available:
            raise OrderRejected(
                f"Trying to sell {float(qty):.0f} but only {float(max(available, Decimal('0'))):.0f} "
                "shares are available (owned minus pending sell orders)."
            )

    reference = to_decimal(position.purchase_price) if position is not None else None
    quote: Quote = prices.resolve(
        db,
        symbol,
        reference_price=reference,
        name=name or (str(position.name) if position is not None else None),
    )
    total = round_cents(quote.price * qty)

    status = market_status(get_market_settings(db), now=now)
    if status.is_open:
        if order_type == BUY:
            position = apply_buy(db, user, symbol, quote.name, qty, quote.price, source="MARKET", at=moment)
        else:
            position = apply_sell(db, user, position, qty, quote.price, source="MARKET", at=moment)
        logger.info("Executed %s %s x%s at %s for user %s", order_type, symbol, qty, quote.price, user.id)
        return OrderResult(
            status=ORDER_EXECUTED,
            symbol=symbol,
            name=quote.name,
            order_type=order_type,
            shares=qty,
            price=quote.price,
            total=total,
            price_source=quote.source,
            cash_balance=to_decimal(user.cash_balance),
            position=position,
        )

    if order_type == BUY:
        committed = pending_buy_commitment(db, user.id)
        cash = to_decimal(user.cash_balance)
        if total + committed > cash:
            raise OrderRejected(
                f"Insufficient funds. Need {float(total):.2f} plus {float(committed):.2f} "
                f"committed to queued orders, have {float(cash):.2f}"
            )

    order = QueuedOrder(
        user_id=user.id,
        symbol=symbol,
        name=quote.name,
        order_type=order_type,
        shares=float(qty),
        order_price=float(quote.price),
        status=ORDER_PENDING,
        created_at=moment,
    )
    db.add(order)
    db.flush()
    logger.info("Queued %s %s x%s (order %s) for user %s; market closed", order_type, symbol, qty, order.id, user.id)
    return OrderResult(
        status="QUEUED",
        symbol=symbol,
        name=quote.name,
        order_type=order_type,
        shares=qty,
        price=quote.price,
        total=total,
        price_source=quote.source,
        cash_balance=to_decimal(user.cash_balance),
        order=order,
    )


def cancel_order(
    db: Session,
    order: QueuedOrder,
    reason: str,
    now: datetime | None = None,
) -> QueuedOrder:
    if order.status != ORDER_PENDING:
        raise OrderRejected(f"Order {order.id} is {order.status} and can no longer be cancelled.")
    order.status = ORDER_CANCELLED
    order.cancelled_at = utc_naive(now)
    order.cancel_reason = reason
    return order


def cancel_pending_orders_for_user(db: Session, user_id: int, reason: str) -> int:
    orders = db.execute(
        select(QueuedOrder)
        .where(QueuedOrder.user_id == user_id, QueuedOrder.status == ORDER_PENDING)
        .with_for_update()
    ).scalars().all()
    for order in orders:
        cancel_order(db, order, reason)
    return len(orders)


def execute_pending_orders(
    db: Session,
    prices: PriceService,
    now: datetime | None = None,
) -> ExecutionSummary:
    """Fill PENDING orders oldest first while the market is open. Caller commits."""
    status = market_status(get_market_settings(db), now=now)
    summary = ExecutionSummary(market_open=status.is_open)
    if not status.is_open:
        return summary

    moment = utc_naive(now)
    orders = db.execute(
        select(QueuedOrder)
        .where(QueuedOrder.status == ORDER_PENDING)
        .order_by(QueuedOrder.created_at.asc(), QueuedOrder.id.asc())
        .with_for_update()
    ).scalars().all()

    for order in orders:
        summary.processed += 1
        user = db.execute(select(User).where(User.id == order.user_id).with_for_update()).scalar_one_or_none()
        if user is None:
            cancel_order(db, order, "Account no longer exists", now=moment)
            summary.cancelled += 1
            summary.cancelled_order_ids.append(int(order.id))
            continue

        qty = to_decimal(order.shares)
        order_price = to_decimal(order.order_price)
        try:
            quote = prices.resolve(
                db,
                str(order.symbol),
                reference_price=order_price if order_price > 0 else None,
                name=str(order.name),
            )
            fill_price = quote.price
        except QuoteError as e:
            logger.warning("No price for queued order %s (%s); filling at order price", order.id, e)
            fill_price = order_price

        try:
            if fill_price <= 0:
                raise OrderRejected("No execution price available")
            if order.order_type == BUY:
                position = apply_buy(
                    db, user, str(order.symbol), str(order.name), qty, fill_price, source="QUEUED", at=moment
                )
            else:
                held = get_position(db, user.id, str(order.symbol), for_update=True)
                if held is None or to_decimal(held.shares) < qty:
                    raise OrderRejected("Insufficient shares at execution")
                position = apply_sell(db, user, held, qty, fill_price, source="QUEUED", at=moment)
        except OrderRejected as e:
            reason = str(e)
            if reason.startswith("Insufficient funds"):
                reason = "Insufficient funds at execution"
            cancel_order(db, order, reason, now=moment)
            logger.info("Cancelled queued order %s: %s", order.id, reason)
            summary.cancelled += 1
            summary.cancelled_order_ids.append(int(order.id))
            continue

        order.status = ORDER_EXECUTED
        order.executed_at = moment
        order.execution_price = float(fill_price)
        order.position_id = int(position.id) if position is not None else None
        summary.executed += 1
        summary.executed_order_ids.append(int(order.id))
        logger.info(
            "Executed queued order %s: %s %s x%s at %s", order.id, order.order_type, order.symbol, qty, fill_price
        )

    db.flush()
    return summary
