"""Unit tests for order placement and queued order execution."""

from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import select

from stocksim.game_settings import DAILY_TRADING_LIMIT_KEY, set_game_setting
from stocksim.models import Position, QueuedOrder, Transaction
from stocksim.orders import (
    BUY,
    SELL,
    OrderRejected,
    cancel_order,
    execute_pending_orders,
    place_order,
)
from stocksim.quotes import QuoteUnavailableError


def positions_for(db, user):
    db.expire_all()
    return db.execute(select(Position).where(Position.user_id == user.id)).scalars().all()


class TestImmediateExecution:
    """Test orders placed while the market is open."""

    def test_buy_creates_position(self, db, prices, quote_client, make_user, set_market):
        """Test a buy debits cash, opens a position and writes the ledger."""
        set_market(True)
        user = make_user()
        quote_client.prices["AAPL"] = "175.00"

        result = place_order(db, user.id, BUY, "AAPL", 10, prices)
        db.commit()

        assert result.status == "EXECUTED"
        assert result.total == Decimal("1750.00")
        assert result.price_source == "LIVE"
        db.refresh(user)
        assert Decimal(str(user.cash_balance)) == Decimal("98250")
        [position] = positions_for(db, user)
        assert float(position.shares) == 10
        assert float(position.purchase_price) == 175.0
        assert float(position.total_value) == 1750.0
        [trade] = db.execute(select(Transaction)).scalars().all()
        assert trade.type == "BUY"
        assert trade.source == "MARKET"
        assert float(trade.amount) == -1750.0

    def test_repeat_buy_averages_cost_basis(self, db, prices, quote_client, make_user, set_market):
        """Test a second buy blends the cost basis by share count."""
        set_market(True)
        user = make_user()
        quote_client.prices["AAPL"] = "100.00"
        place_order(db, user.id, BUY, "AAPL", 10, prices)
        db.commit()
        quote_client.prices["AAPL"] = "120.00"
        place_order(db, user.id, BUY, "AAPL", 30, prices)
        db.commit()

        [position] = positions_for(db, user)
        assert float(position.shares) == 40
        assert float(position.purchase_price) == 115.0
        assert float(position.price) == 120.0
        assert float(position.change) == 5.0

    def test_insufficient_funds(self, db, prices, quote_client, make_user, set_market):
        """Test a buy larger than the cash balance is rejected."""
        set_market(True)
        user = make_user(cash=1000)
        quote_client.prices["AAPL"] = "175.00"
        with pytest.raises(OrderRejected, match="Insufficient funds"):
            place_order(db, user.id, BUY, "AAPL", 10, prices)
        db.rollback()
        assert positions_for(db, user) == []

    def test_sell_all_deletes_position(self, db, prices, quote_client, make_user, make_position, set_market):
        """Test selling every share removes the position and credits cash."""
        set_market(True)
        user = make_user(cash=0)
        make_position(user, "AAPL", 10, 100)
        quote_client.prices["AAPL"] = "110.00"

        result = place_order(db, user.id, SELL, "AAPL", 10, prices)
        db.commit()

        assert result.status == "EXECUTED"
        db.refresh(user)
        assert float(user.cash_balance) == 1100.0
        assert positions_for(db, user) == []

    def test_partial_sell_keeps_basis(self, db, prices, quote_client, make_user, make_position, set_market):
        """Test a partial sell reduces shares without changing the cost basis."""
        set_market(True)
        user = make_user(cash=0)
        make_position(user, "AAPL", 10, 100)
        quote_client.prices["AAPL"] = "110.00"

        place_order(db, user.id, SELL, "AAPL", 4, prices)
        db.commit()

        [position] = positions_for(db, user)
        assert float(position.shares) == 6
        assert float(position.purchase_price) == 100.0
        assert float(position.total_value) == 660.0

    def test_sell_more_than_owned(self, db, prices, quote_client, make_user, make_position, set_market):
        """Test overselling is rejected."""
        set_market(True)
        user = make_user()
        make_position(user, "AAPL", 5, 100)
        quote_client.prices["AAPL"] = "110.00"
        with pytest.raises(OrderRejected, match="only 5"):
            place_order(db, user.id, SELL, "AAPL", 6, prices)

    def test_sell_without_position(self, db, prices, make_user, set_market):
        """Test selling a symbol the user does not hold."""
        set_market(True)
        user = make_user()
        with pytest.raises(OrderRejected, match="No shares to sell"):
            place_order(db, user.id, SELL, "AAPL", 1, prices)

    def test_sell_uses_cost_basis_as_reference(self, db, prices, quote_client, make_user, make_position, set_market):
        """Test an unquoted holding sells at a simulated price around its cost basis."""
        set_market(True)
        user = make_user(cash=0)
        make_position(user, "ZZZZ", 2, 40)

        result = place_order(db, user.id, SELL, "ZZZZ", 2, prices)

        assert result.price_source == "SIMULATED"
        assert result.price == Decimal("40.00")

    def test_non_positive_shares(self, db, prices, make_user, set_market):
        """Test zero shares is rejected."""
        set_market(True)
        user = make_user()
        with pytest.raises(OrderRejected, match="shares must be > 0"):
            place_order(db, user.id, BUY, "AAPL", 0, prices)

    def test_daily_limit(self, db, prices, quote_client, make_user, set_market):
        """Test the daily trading limit counts executed trades."""
        set_market(True)
        set_game_setting(db, DAILY_TRADING_LIMIT_KEY, 2, updated_by=None)
        db.commit()
        user = make_user()
        quote_client.prices["AAPL"] = "10.00"
        place_order(db, user.id, BUY, "AAPL", 1, prices)
        place_order(db, user.id, BUY, "AAPL", 1, prices)
        db.commit()
        with pytest.raises(OrderRejected, match="Daily trading limit of 2"):
            place_order(db, user.id, BUY, "AAPL", 1, prices)

    def test_sub_cent_quote_never_fills(self, db, prices, quote_client, make_user, set_market):
        """Test a quote that rounds to zero cannot buy shares for free."""
        set_market(True)
        user = make_user()
        quote_client.prices["PENNY"] = "0.004"
        with pytest.raises(QuoteUnavailableError):
            place_order(db, user.id, BUY, "PENNY", 5000, prices)
        db.rollback()
        db.refresh(user)
        assert float(user.cash_balance) == 100000.0
        assert positions_for(db, user) == []


class TestQueuedOrders:
    """Test orders placed while the market is closed."""

    def test_buy_is_queued(self, db, prices, quote_client, make_user, set_market):
        """Test a closed-market buy is stored as PENDING without moving cash."""
        set_market(False)
        user = make_user()
        quote_client.prices["AAPL"] = "175.00"

        result = place_order(db, user.id, BUY, "AAPL", 10, prices)
        db.commit()

        assert result.status == "QUEUED"
        assert result.order.status == "PENDING"
        assert float(result.order.order_price) == 175.0
        db.refresh(user)
        assert float(user.cash_balance) == 100000.0
        assert positions_for(db, user) == []

    def test_pending_buys_commit_cash(self, db, prices, quote_client, make_user, set_market):
        """Test queued buys cannot together exceed the cash balance."""
        set_market(False)
        user = make_user(cash=1000)
        quote_client.prices["AAPL"] = "100.00"
        place_order(db, user.id, BUY, "AAPL", 5, prices)
        db.commit()
        with pytest.raises(OrderRejected, match="committed to queued orders"):
            place_order(db, user.id, BUY, "AAPL", 6, prices)

    def test_pending_sells_commit_shares(self, db, prices, quote_client, make_user, make_position, set_market):
        """Test queued sells cannot together exceed the shares owned."""
        set_market(False)
        user = make_user()
        make_position(user, "AAPL", 10, 100)
        quote_client.prices["AAPL"] = "100.00"
        place_order(db, user.id, SELL, "AAPL", 6, prices)
        db.commit()
        with pytest.raises(OrderRejected, match="only 4 shares are available"):
            place_order(db, user.id, SELL, "AAPL", 5, prices)

    def test_queued_orders_count_toward_daily_limit(self, db, prices, quote_client, make_user, set_market):
        """Test queued orders use up the daily trading limit."""
        set_market(False)
        set_game_setting(db, DAILY_TRADING_LIMIT_KEY, 1, updated_by=None)
        db.commit()
        user = make_user()
        quote_client.prices["AAPL"] = "10.00"
        place_order(db, user.id, BUY, "AAPL", 1, prices)
        db.commit()
        with pytest.raises(OrderRejected, match="Daily trading limit"):
            place_order(db, user.id, BUY, "AAPL", 1, prices)

    def test_cancel_only_pending(self, db, prices, quote_client, make_user, set_market):
        """Test cancelled orders cannot be cancelled again."""
        set_market(False)
        user = make_user()
        quote_client.prices["AAPL"] = "10.00"
        order = place_order(db, user.id, BUY, "AAPL", 1, prices).order
        cancel_order(db, order, "Cancelled by user")
        db.commit()
        assert order.status == "CANCELLED"
        assert order.cancel_reason == "Cancelled by user"
        with pytest.raises(OrderRejected):
            cancel_order(db, order, "again")


class TestExecutePendingOrders:
    """Test the queued order executor."""

    def test_noop_while_closed(self, db, prices, quote_client, make_user, set_market):
        """Test nothing executes while the market is closed."""
        set_market(False)
        user = make_user()
        quote_client.prices["AAPL"] = "10.00"
        place_order(db, user.id, BUY, "AAPL", 1, prices)
        db.commit()

        summary = execute_pending_orders(db, prices)

        assert summary.market_open is False
        assert summary.processed == 0
        assert db.execute(select(QueuedOrder)).scalar_one().status == "PENDING"

    def test_executes_at_current_price(self, db, prices, quote_client, make_user, set_market):
        """Test a queued buy fills at the price resolved at execution time."""
        set_market(False)
        user = make_user()
        quote_client.prices["AAPL"] = "100.00"
        order = place_order(db, user.id, BUY, "AAPL", 10, prices).order
        db.commit()

        set_market(True)
        quote_client.prices["AAPL"] = "110.00"
        summary = execute_pending_orders(db, prices)
        db.commit()

        assert summary.executed == 1
        db.refresh(order)
        assert order.status == "EXECUTED"
        assert float(order.execution_price) == 110.0
        assert order.executed_at is not None
        [position] = positions_for(db, user)
        assert order.position_id == position.id
        db.refresh(user)
        assert float(user.cash_balance) == 98900.0
        trade = db.execute(select(Transaction)).scalar_one()
        assert trade.source == "QUEUED"

    def test_falls_back_to_order_price(self, db, prices, quote_client, make_user, set_market):
        """Test an order with no quote at execution fills at its order price."""
        set_market(False)
        user = make_user()
        quote_client.prices["ZZZZ"] = "50.00"
        order = place_order(db, user.id, BUY, "ZZZZ", 2, prices).order
        db.commit()

        set_market(True)
        del quote_client.prices["ZZZZ"]
        execute_pending_orders(db, prices)
        db.commit()

        db.refresh(order)
        assert order.status == "EXECUTED"
        assert float(order.execution_price) == 50.0

    def test_oldest_first_and_cancel_on_insufficient_funds(self, db, prices, quote_client, make_user, set_market):
        """Test orders run oldest first and unaffordable ones are cancelled."""
        set_market(False)
        user = make_user(cash=1000)
        quote_client.prices["AAPL"] = "100.00"
        first = place_order(db, user.id, BUY, "AAPL", 6, prices, now=datetime(2024, 1, 8, 22, 0)).order
        second = place_order(db, user.id, BUY, "AAPL", 4, prices, now=datetime(2024, 1, 8, 22, 5)).order
        db.commit()

        user.cash_balance = 700
        db.commit()
        set_market(True)
        summary = execute_pending_orders(db, prices)
        db.commit()

        assert summary.executed_order_ids == [first.id]
        assert summary.cancelled_order_ids == [second.id]
        db.refresh(second)
        assert second.status == "CANCELLED"
        assert second.cancel_reason == "Insufficient funds at execution"
        db.refresh(user)
        assert float(user.cash_balance) == 100.0

    def test_sell_cancelled_when_shares_gone(self, db, prices, quote_client, make_user, make_position, set_market):
        """Test a queued sell is cancelled if the position no longer covers it."""
        set_market(False)
        user = make_user()
        position = make_position(user, "AAPL", 5, 100)
        quote_client.prices["AAPL"] = "100.00"
        order = place_order(db, user.id, SELL, "AAPL", 5, prices).order
        db.commit()

        db.delete(position)
        db.commit()
        set_market(True)
        summary = execute_pending_orders(db, prices)
        db.commit()

        assert summary.cancelled == 1
        db.refresh(order)
        assert order.cancel_reason == "Insufficient shares at execution"
