"""Unit tests for portfolio valuation, snapshots and the leaderboard."""

from datetime import datetime, timedelta

from sqlalchemy import select

import stocksim.leaderboard as leaderboard_module
from stocksim.leaderboard import monthly_performance, update_leaderboard
from stocksim.models import LeaderboardEntry, PortfolioSnapshot
from stocksim.portfolio import portfolio_history, refresh_portfolio_prices, value_portfolio


class TestPortfolioValuation:
    """Test cash plus positions valuation."""

    def test_value_portfolio(self, db, make_user, make_position):
        """Test totals and gain/loss against the starting balance."""
        user = make_user(cash=90000)
        make_position(user, "AAPL", 10, 100, price=150)
        make_position(user, "MSFT", 5, 200, price=180)

        valuation = value_portfolio(db, user)

        assert float(valuation.positions_value) == 2400.0
        assert float(valuation.total_value) == 92400.0
        assert float(valuation.total_gain_loss) == -7600.0
        assert float(valuation.total_gain_loss_percent) == -7.6
        assert [value.position.symbol for value in valuation.positions] == ["AAPL", "MSFT"]
        aapl = valuation.positions[0]
        assert float(aapl.gain_loss) == 500.0
        assert float(aapl.gain_loss_percent) == 50.0


class TestRefreshPortfolioPrices:
    """Test the per-position price refresh."""

    def test_updates_prices_and_records_snapshot(self, db, quote_client, prices, make_user, make_position):
        """Test cached fields are recomputed and a snapshot is appended."""
        user = make_user(cash=1000)
        make_position(user, "AAPL", 10, 100)
        quote_client.prices["AAPL"] = "120.00"

        result = refresh_portfolio_prices(db, user, prices)
        db.commit()

        assert (result.updated, result.total, result.errors) == (1, 1, [])
        position = user.positions[0]
        assert float(position.price) == 120.0
        assert float(position.change) == 20.0
        assert float(position.change_percent) == 20.0
        assert float(position.total_value) == 1200.0
        snapshot = db.execute(select(PortfolioSnapshot)).scalar_one()
        assert float(snapshot.total_value) == 2200.0
        assert float(snapshot.positions_value) == 1200.0

    def test_collects_errors(self, db, prices, make_user, make_position):
        """Test positions without any price source are reported, not fatal."""
        user = make_user(cash=0)
        make_position(user, "ZZZZ", 1, 0)
        make_position(user, "AAPL", 1, 100)

        result = refresh_portfolio_prices(db, user, prices)

        assert result.total == 2
        assert result.updated == 1
        assert len(result.errors) == 1
        assert result.errors[0].startswith("ZZZZ:")

    def test_history_window(self, db, make_user):
        """Test history returns snapshots inside the window, oldest first."""
        user = make_user()
        now = datetime(2024, 3, 31, 12, 0)
        for days_ago, value in ((45, 1), (20, 2), (1, 3)):
            db.add(
                PortfolioSnapshot(
                    user_id=user.id,
                    snapshot_date=now - timedelta(days=days_ago),
                    total_value=value,
                    cash_balance=value,
                    positions_value=0,
                )
            )
        db.commit()

        history = portfolio_history(db, user.id, days=30, now=now)

        assert [float(snapshot.total_value) for snapshot in history] == [2.0, 3.0]


class TestLeaderboard:
    """Test ranking and monthly performance."""

    def test_ranking(self, db, make_user, make_position):
        """Test users are ranked by total value with ties broken by id."""
        alice = make_user(email="alice@example.com", cash=100000)
        bob = make_user(email="bob@example.com", cash=90000)
        carol = make_user(email="carol@example.com", cash=100000)
        make_position(bob, "AAPL", 100, 150, price=200)

        entries = update_leaderboard(db)
        db.commit()

        assert [(entry.user_id, entry.rank) for entry in entries] == [(bob.id, 1), (alice.id, 2), (carol.id, 3)]
        assert float(entries[0].total_value) == 110000.0
        assert float(entries[0].total_gain_loss) == 10000.0
        assert float(entries[0].total_gain_loss_percent) == 10.0

    def test_replaces_previous_ranking(self, db, make_user):
        """Test rebuilding the leaderboard keeps one row per user."""
        make_user(email="alice@example.com")
        update_leaderboard(db)
        update_leaderboard(db)
        db.commit()
        assert len(db.execute(select(LeaderboardEntry)).scalars().all()) == 1

    def test_monthly_performance(self, db, make_user):
        """Test monthly start/end values come from the first and last snapshot of each month."""
        user = make_user()
        rows = [
            (datetime(2021, 1, 15), 50000),
            (datetime(2024, 1, 2), 100000),
            (datetime(2024, 1, 30), 110000),
            (datetime(2024, 2, 10), 110000),
        ]
        for snapshot_date, value in rows:
            db.add(
                PortfolioSnapshot(
                    user_id=user.id,
                    snapshot_date=snapshot_date,
                    total_value=value,
                    cash_balance=value,
                    positions_value=0,
                )
            )
        db.commit()

        performance = monthly_performance(db, user.id, now=datetime(2024, 3, 5))

        assert [month.month for month in performance] == ["2024-02", "2024-01"]
        january = performance[1]
        assert float(january.start_value) == 100000.0
        assert float(january.end_value) == 110000.0
        assert float(january.return_percent) == 10.0
        assert float(performance[0].return_percent) == 0.0

    def test_rebuild_takes_settings_row_lock(self, db, make_user, monkeypatch):
        """Test the rebuild locks the market settings row before replacing entries."""
        calls = []
        original = leaderboard_module.get_market_settings

        def recording(session, for_update=False):
            calls.append(for_update)
            return original(session, for_update=for_update)

        monkeypatch.setattr(leaderboard_module, "get_market_settings", recording)
        make_user(email="alice@example.com")

        update_leaderboard(db)

        assert calls == [True]
