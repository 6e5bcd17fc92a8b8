import os
import random
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable


CENT = Decimal("0.01")
MIN_SIMULATED_PRICE = Decimal(os.environ.get("MIN_SIMULATED_PRICE", "1.00"))
SIMULATED_DRIFT_CENTER = Decimal("0.48")
SIMULATED_DRIFT_SPAN = Decimal("0.03")


def to_decimal(value: object) -> Decimal:
    if value is None:
        return Decimal("0")
    return Decimal(str(value))


def round_cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def percent_of(part: Decimal, whole: Decimal) -> Decimal:
    if whole == 0:
        return Decimal("0")
    return part / whole * Decimal(100)


def weighted_average_cost(
    held_shares: Decimal,
    held_cost_basis: Decimal,
    bought_shares: Decimal,
    fill_price: Decimal,
) -> Decimal:
    """Cost basis per share after adding `bought_shares` at `fill_price` to an existing lot."""
    total_shares = held_shares + bought_shares
    if total_shares <= 0:
        return Decimal("0")
    return (held_shares * held_cost_basis + bought_shares * fill_price) / total_shares


def position_metrics(
    shares: Decimal,
    cost_basis: Decimal,
    price: Decimal,
) -> tuple[Decimal, Decimal, Decimal]:
    """
    Cached display fields of a position:
    - change: price move per share against the cost basis
    - change_percent: that move relative to the cost basis
    - total_value: market value of the whole lot
    All three are rounded to cents.
    """
    change = price - cost_basis
    return (
        round_cents(change),
        round_cents(percent_of(change, cost_basis)),
        round_cents(price * shares),
    )


def simulated_price(
    reference_price: Decimal,
    rng: Callable[[], float] = random.random,
) -> Decimal:
    """
    Synthetic quote used when no live price is available.

    Moves the reference by (rng() - 0.48) * 3%, i.e. between -1.44% and +1.56%,
    never below MIN_SIMULATED_PRICE.
    """
    variation = (Decimal(str(rng())) - SIMULATED_DRIFT_CENTER) * SIMULATED_DRIFT_SPAN
    price = round_cents(reference_price * (Decimal(1) + variation))
    return max(MIN_SIMULATED_PRICE, price)
