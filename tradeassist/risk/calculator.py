"""
Position sizing and liquidation-risk calculator.

The calculator turns an account's risk budget into a position size for
a signal: the amount of capital that, if the stop loss is hit, loses
exactly `risk_percent` of the balance.  It also exposes the unrealized
PnL formula used by the market monitor so both sides of a trade share
one definition.

Every function here is pure: no I/O, no clock, no shared state.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..core.models import AccountProfile, Direction, Signal


@dataclass(frozen=True)
class RiskAssessment:
    """Result of sizing a signal against an account.

    Attributes
    ----------
    calculated_size : float
        Position size in currency units, rounded to cents.  Zero when
        the signal cannot be sized.
    max_risk : float
        Capital at risk (``balance * risk_percent / 100``), rounded to cents.
    liquidation_distance : float
        Percent move against the position that wipes the margin at the
        signal's leverage.  A simplified proxy, not an exchange model.
    """
    calculated_size: float
    max_risk: float
    liquidation_distance: float


def calculate_risk(signal: Signal, account: AccountProfile) -> RiskAssessment:
    """Size `signal` against the risk budget of `account`.

    Degenerate inputs (entry or stop not positive, or entry equal to
    stop) yield a zero size and zero liquidation distance instead of
    raising; the capital at risk is still reported.
    """
    balance = float(account.futures_balance or 0.0)
    risk_percent = float(account.risk_percent or 0.0)
    max_risk = balance * (risk_percent / 100)

    entry = signal.entry_price
    stop = float(signal.stop_loss or 0.0)
    if entry <= 0 or stop <= 0 or entry == stop:
        return RiskAssessment(calculated_size=0.0, max_risk=round(max_risk, 2), liquidation_distance=0.0)

    stop_distance_pct = abs(entry - stop) / entry
    size = max_risk / stop_distance_pct
    leverage = float(signal.leverage or 0.0)
    liquidation_distance = (1 / leverage) * 100 if leverage > 0 else 0.0
    return RiskAssessment(
        calculated_size=round(size, 2),
        max_risk=round(max_risk, 2),
        liquidation_distance=liquidation_distance,
    )


def unrealized_pnl(direction: Direction, entry: float, price: float, size: float, leverage: float) -> float:
    """Mark-to-market PnL of a position in currency units.

    ``(price - entry)`` for longs and ``(entry - price)`` for shorts,
    taken relative to the entry and scaled by size and leverage.
    """
    if entry <= 0:
        return 0.0
    diff = price - entry if direction is Direction.LONG else entry - price
    return diff / entry * size * leverage


def entry_triggered(direction: Direction, entry: float, price: float) -> bool:
    """Whether `price` reaches a conditional entry at `entry`.

    Longs fill at or below the entry, shorts at or above it.
    """
    if direction is Direction.LONG:
        return price <= entry
    return price >= entry
