"""
Report generation utilities.

This module turns a trading session into human-readable artefacts:
a CSV of closed trades, a CSV of the audit trail, a JSON summary of the
session metrics and a PNG chart of cumulative realized PnL.
"""

from __future__ import annotations

import os
import json
from typing import List
import pandas as pd
import matplotlib

# Use non-interactive backend for environments without display
matplotlib.use("Agg")
import matplotlib.pyplot as plt

from ..core.models import AuditEntry, Position, Signal, SignalStatus
from .metrics import compute_metrics


def generate_session_report(
    signals: List[Signal],
    positions: List[Position],
    logs: List[AuditEntry],
    out_dir: str = "results",
) -> dict:
    """Generate report files for a trading session.

    Creates the output directory if it does not exist and writes the
    following files:

    - `trades.csv` – closed signals with their realized PnL
    - `audit_log.csv` – audit trail, oldest entry first
    - `summary.json` – session metrics
    - `cumulative_pnl.png` – line chart of cumulative realized PnL

    Returns the metrics written to `summary.json`.
    """
    os.makedirs(out_dir, exist_ok=True)

    # Trades CSV, in creation order
    closed = sorted(
        (s for s in signals if s.status is SignalStatus.CLOSED),
        key=lambda s: s.created_at if s.created_at is not None else pd.Timestamp.min.tz_localize("UTC"),
    )
    trades_data = [
        {
            'id': s.id,
            'created_at': s.created_at.isoformat() if s.created_at is not None else "",
            'pair': s.pair,
            'direction': s.direction.value if s.direction else "",
            'entry': s.entry_price,
            'stop_loss': s.stop_loss,
            'leverage': s.leverage,
            'size': s.calculated_size,
            'max_risk': s.max_risk_amount,
            'pnl': s.pnl if s.pnl is not None else 0.0,
        }
        for s in closed
    ]
    df_trades = pd.DataFrame(
        trades_data,
        columns=['id', 'created_at', 'pair', 'direction', 'entry', 'stop_loss', 'leverage', 'size', 'max_risk', 'pnl'],
    )
    df_trades.to_csv(os.path.join(out_dir, 'trades.csv'), index=False)

    # Audit log CSV
    df_logs = pd.DataFrame(
        [e.to_dict() for e in reversed(logs)],
        columns=['id', 'timestamp', 'category', 'message', 'details'],
    )
    df_logs.to_csv(os.path.join(out_dir, 'audit_log.csv'), index=False)

    # Summary JSON
    metrics = compute_metrics(signals, positions)
    with open(os.path.join(out_dir, 'summary.json'), 'w', encoding='utf-8') as fh:
        json.dump(metrics, fh, indent=2, ensure_ascii=False)

    # Cumulative PnL plot
    fig, ax = plt.subplots(figsize=(10, 4))
    if not df_trades.empty:
        ax.plot(range(1, len(df_trades) + 1), df_trades['pnl'].cumsum(), marker='o', linewidth=1.5)
        ax.axhline(0.0, color='grey', linewidth=0.8)
        ax.set_title('Cumulative Realized PnL')
        ax.set_xlabel('Trade #')
        ax.set_ylabel('PnL')
    fig.tight_layout()
    fig.savefig(os.path.join(out_dir, 'cumulative_pnl.png'))
    plt.close(fig)
    return metrics
