"""
Application entry point.

This module defines a simple command-line interface around a
`TradingSession`: ingest alerts, act on signals by id, trigger the kill
switch, run the market monitor and write session reports.  Every
command loads the session from the configured state file and persists
it again, so consecutive invocations share one session.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import List, Optional

from .config.schema import Config, load_config
from .engine.lifecycle import ActionResult
from .reporting.metrics import compute_metrics
from .session import TradingSession


def _setup_logging(verbose: bool, log_file: Optional[str] = None) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    fmt = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        directory = os.path.dirname(log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        handlers.append(RotatingFileHandler(log_file, maxBytes=5_000_000, backupCount=3))
    logging.basicConfig(level=level, format=fmt, datefmt='%Y-%m-%d %H:%M:%S', handlers=handlers)
    # Quiet per-request chatter from the HTTP price feed.
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def _print_result(result: ActionResult) -> int:
    if result.ok:
        signal = result.signal
        print(f"{result.outcome.value}: {signal.id} {signal.pair} -> {signal.status.value}")
        return 0
    print(f"{result.outcome.value}: {result.reason}")
    return 1


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Trade signal assistant")
    parser.add_argument('--config', default='config.yaml', help="Path to configuration YAML file")
    parser.add_argument('-v', '--verbose', action='store_true', help="Enable debug logging")
    sub = parser.add_subparsers(dest='mode', required=True)

    sub.add_parser('run', help="Run the market monitor until interrupted")
    ingest = sub.add_parser('ingest', help="Interpret and queue an alert")
    ingest.add_argument('text', help="Alert text")
    ingest.add_argument('--source', default="Manual Ingestion")
    confirm = sub.add_parser('confirm', help="Confirm a queued signal")
    confirm.add_argument('id')
    confirm.add_argument('--now', action='store_true', help="Execute immediately instead of waiting for entry")
    cancel = sub.add_parser('cancel', help="Cancel a signal")
    cancel.add_argument('id')
    close = sub.add_parser('close', help="Close an open position")
    close.add_argument('id')
    sub.add_parser('kill', help="Close every open position and waiting signal")
    voice = sub.add_parser('voice', help="Run a spoken or typed command")
    voice.add_argument('transcript')
    sub.add_parser('status', help="Print signals, positions and metrics")
    report = sub.add_parser('report', help="Write the session report")
    report.add_argument('--out-dir', default='results')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Parse command-line arguments and dispatch to the appropriate mode."""
    args = _build_parser().parse_args(argv)

    config = load_config(args.config) if os.path.exists(args.config) else Config()
    _setup_logging(args.verbose, config.log_file)
    if not os.path.exists(args.config):
        logging.info("No configuration at %s; using defaults", args.config)

    session = TradingSession(config)
    try:
        if args.mode == 'run':
            session.monitor.run_forever()
            return 0
        if args.mode == 'ingest':
            return _print_result(session.ingest(args.text, source=args.source))
        if args.mode == 'confirm':
            return _print_result(session.engine.confirm(args.id, immediate=args.now))
        if args.mode == 'cancel':
            return _print_result(session.engine.cancel(args.id))
        if args.mode == 'close':
            return _print_result(session.engine.close_position(args.id))
        if args.mode == 'kill':
            results = session.kill_switch()
            print(f"Kill switch closed {len(results)} signals/positions")
            return 0
        if args.mode == 'voice':
            outcome = session.handle_voice(args.transcript)
            print(outcome.feedback)
            return 0 if outcome.accepted else 1
        if args.mode == 'status':
            signals = session.state.list_signals()
            positions = session.state.list_positions()
            for s in signals:
                print(f"{s.id}  {s.status.value:<20} {s.pair:<10} {s.kind.value:<6} size={s.calculated_size}")
            for p in positions:
                print(f"{p.id}  OPEN {p.pair} {p.direction.value} @ {p.entry_price} pnl={p.unrealized_pnl:.2f}")
            print(json.dumps(compute_metrics(signals, positions), indent=2))
            return 0
        if args.mode == 'report':
            session.report(out_dir=args.out_dir)
            logging.info("Report written to %s", args.out_dir)
            return 0
    finally:
        session.stop()
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
