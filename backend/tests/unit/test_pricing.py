"""Unit tests for money and price helpers."""

from decimal import Decimal

from stocksim.pricing import (
    percent_of,
    position_metrics,
    round_cents,
    simulated_price,
    weighted_average_cost,
)


class TestWeightedAverageCost:
    """Test cost basis blending across buys."""

    def test_first_lot_uses_fill_price(self):
        """Test an empty position takes the fill price as its basis."""
        assert weighted_average_cost(Decimal("0"), Decimal("0"), Decimal("10"), Decimal("100")) == Decimal("100")

    def test_blends_by_share_count(self):
        """Test 10 @ 100 plus 30 @ 120 averages to 115."""
        basis = weighted_average_cost(Decimal("10"), Decimal("100"), Decimal("30"), Decimal("120"))
        assert basis == Decimal("115")

    def test_zero_total_shares(self):
        """Test degenerate input does not divide by zero."""
        assert weighted_average_cost(Decimal("0"), Decimal("0"), Decimal("0"), Decimal("50")) == Decimal("0")


class TestPositionMetrics:
    """Test cached position display fields."""

    def test_gain(self):
        """Test change, percent and total value against the cost basis."""
        change, change_percent, total_value = position_metrics(Decimal("10"), Decimal("100"), Decimal("120"))
        assert change == Decimal("20.00")
        assert change_percent == Decimal("20.00")
        assert total_value == Decimal("1200.00")

    def test_loss_rounds_to_cents(self):
        """Test fractional results are rounded to cents."""
        change, change_percent, total_value = position_metrics(Decimal("3"), Decimal("30"), Decimal("29.999"))
        assert change == Decimal("0.00")
        assert change_percent == Decimal("0.00")
        assert total_value == Decimal("90.00")

    def test_percent_of_zero_whole(self):
        """Test a zero basis yields a zero percent."""
        assert percent_of(Decimal("5"), Decimal("0")) == Decimal("0")


class TestSimulatedPrice:
    """Test the synthetic quote fallback."""

    def test_neutral_draw_keeps_reference(self):
        """Test rng() == 0.48 leaves the reference unchanged."""
        assert simulated_price(Decimal("150.00"), rng=lambda: 0.48) == Decimal("150.00")

    def test_drift_bounds(self):
        """Test the extreme draws move the price between -1.44% and +1.56%."""
        assert simulated_price(Decimal("100.00"), rng=lambda: 0.0) == Decimal("98.56")
        assert simulated_price(Decimal("100.00"), rng=lambda: 1.0) == Decimal("101.56")

    def test_floor(self):
        """Test simulated prices never fall below one dollar."""
        assert simulated_price(Decimal("1.00"), rng=lambda: 0.0) == Decimal("1.00")

    def test_rounded_to_cents(self):
        """Test the result always has two decimal places."""
        price = simulated_price(Decimal("33.333"), rng=lambda: 0.7)
        assert price == round_cents(price)
        assert price.as_tuple().exponent == -2
