"""
Performance metrics calculations.

Summary statistics for a trading session: realized results of closed
signals and the live exposure of open positions.  The same numbers back
the CLI `status` output and the session report.
"""

from __future__ import annotations

from typing import List

from ..core.models import Position, Signal, SignalStatus


def compute_metrics(signals: List[Signal], positions: List[Position]) -> dict:
    """Compute a set of summary statistics for the session.

    Parameters
    ----------
    signals : list of Signal
        Every signal of the session; only CLOSED signals with a realized
        PnL count as trades.
    positions : list of Position
        Currently open positions.

    Returns
    -------
    dict
        Dictionary of performance metrics.
    """
    trades = [s.pnl for s in signals if s.status is SignalStatus.CLOSED and s.pnl is not None]
    wins = [p for p in trades if p > 0]
    losses = [p for p in trades if p < 0]
    gross_profit = sum(wins)
    gross_loss = -sum(losses) if losses else 0.0

    pending = [s for s in signals if s.status is SignalStatus.WAITING_FOR_ENTRY]
    return {
        'num_signals': len(signals),
        'num_trades': len(trades),
        'total_pnl': round(sum(trades), 2),
        'win_rate': len(wins) / len(trades) if trades else 0.0,
        'profit_factor': gross_profit / gross_loss if gross_loss > 0 else 0.0,
        'avg_trade': round(sum(trades) / len(trades), 2) if trades else 0.0,
        'open_positions': len(positions),
        'open_exposure': round(sum(p.size for p in positions), 2),
        'unrealized_pnl': round(sum(p.unrealized_pnl for p in positions), 2),
        'pending_entries': len(pending),
    }
