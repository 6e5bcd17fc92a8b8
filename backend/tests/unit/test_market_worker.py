"""Unit tests for the background market worker cycle."""

from sqlalchemy import select

from scripts.market_worker import run_cycle
from stocksim.models import LeaderboardEntry, PortfolioSnapshot, QueuedOrder
from stocksim.orders import BUY, place_order


class TestRunCycle:
    """Test one worker cycle."""

    def test_closed_market_only_ranks(self, db, prices, quote_client, make_user, set_market):
        """Test queued orders wait while the leaderboard is still rebuilt."""
        set_market(False)
        user = make_user()
        quote_client.prices["AAPL"] = "100.00"
        place_order(db, user.id, BUY, "AAPL", 1, prices)
        db.commit()

        counts = run_cycle(db, prices)

        assert counts.market_open is False
        assert counts.orders_processed == 0
        assert counts.leaderboard_entries == 1
        assert db.execute(select(QueuedOrder)).scalar_one().status == "PENDING"

    def test_open_market_executes_and_refreshes(self, db, prices, quote_client, make_user, set_market):
        """Test queued orders fill and holders are revalued."""
        set_market(False)
        user = make_user()
        quote_client.prices["AAPL"] = "100.00"
        place_order(db, user.id, BUY, "AAPL", 2, prices)
        db.commit()

        set_market(True)
        counts = run_cycle(db, prices)

        assert counts.market_open is True
        assert (counts.orders_processed, counts.orders_executed, counts.orders_cancelled) == (1, 1, 0)
        assert counts.portfolios_refreshed == 1
        assert counts.positions_updated == 1
        assert counts.price_errors == []
        entry = db.execute(select(LeaderboardEntry)).scalar_one()
        assert entry.rank == 1
        assert float(entry.total_value) == 100000.0

    def test_cash_only_users_get_snapshots(self, db, prices, make_user, set_market):
        """Test users without positions still build portfolio history."""
        set_market(True)
        user = make_user(cash=25000)

        counts = run_cycle(db, prices)

        assert counts.portfolios_refreshed == 1
        assert counts.positions_updated == 0
        snapshot = db.execute(select(PortfolioSnapshot).where(PortfolioSnapshot.user_id == user.id)).scalar_one()
        assert float(snapshot.total_value) == 25000.0
        assert float(snapshot.positions_value) == 0.0
