"""
Trading session coordinator.

`TradingSession` wires one `AppState` to the lifecycle engine, the
market monitor, the alert interpreter and the command dispatcher, all
built from a `Config`.  The CLI and tests talk to the session; the
session talks to the engine.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable, Optional

from .config.schema import Config
from .core.models import AccountProfile, ExecutionMode, SessionStatus, SignalKind
from .data.commands import CommandDispatcher, CommandInterpreter, DispatchResult
from .data.interpreter import SignalInterpreter
from .data.price_feed import build_price_feed
from .engine.lifecycle import ActionResult, LifecycleEngine, Outcome
from .engine.state import AppState
from .monitor.market_monitor import MarketMonitor
from .reporting.report import generate_session_report
from .utils.persistence import JsonStateStore


logger = logging.getLogger(__name__)


class TradingSession:
    """Own the state of one trading session and its collaborators.

    Parameters
    ----------
    config : Config
        Loaded configuration.
    price_feed : object, optional
        Price source override; built from ``config.price_feed`` otherwise.
    signal_model, command_model : callable, optional
        Model backends for the alert and command interpreters.
    store : JsonStateStore, optional
        Persistence override; ``config.storage.state_file`` otherwise.
        Pass ``persist=False`` to keep the session in memory only.
    """

    def __init__(
        self,
        config: Config,
        price_feed=None,
        signal_model: Optional[Callable[[str], str]] = None,
        command_model: Optional[Callable[[str], str]] = None,
        store: Optional[JsonStateStore] = None,
        persist: bool = True,
        clock=None,
    ) -> None:
        self.config = config
        account = AccountProfile(
            futures_balance=config.account.futures_balance,
            risk_percent=config.account.risk_percent,
            session_status=SessionStatus(config.account.session_status),
        )
        mode = ExecutionMode(config.execution_mode)
        state_kwargs = {'max_log_entries': config.storage.max_log_entries}
        if clock is not None:
            state_kwargs['clock'] = clock
        if persist:
            store = store or JsonStateStore(config.storage.state_file)
            self.state = AppState.load(store, default_account=account, default_mode=mode, **state_kwargs)
        else:
            self.state = AppState(account=account, execution_mode=mode, **state_kwargs)

        self.engine = LifecycleEngine(self.state, max_size_multiple=config.max_size_multiple)
        self.price_feed = price_feed if price_feed is not None else build_price_feed(config.price_feed)
        self.monitor = MarketMonitor(
            self.state,
            self.engine,
            self.price_feed,
            interval=config.monitor.interval_seconds,
            max_workers=config.monitor.max_workers,
        )
        self.interpreter = SignalInterpreter(signal_model, max_input_chars=config.interpreter.max_input_chars)
        self.commands = CommandInterpreter(command_model)
        self.dispatcher = CommandDispatcher(self.engine)

    # ------------------------------------------------------------------
    def ingest(self, raw_text: str, source: str = "Manual Ingestion") -> ActionResult:
        """Interpret an alert and admit it.

        In ASSISTED mode with ``auto_confirm`` set, NEW signals are
        confirmed for conditional entry straight away.
        """
        candidate = self.interpreter.interpret(raw_text, source=source)
        if candidate is None:
            return ActionResult(Outcome.REJECTED, None, "no signal found")
        mode = self.state.execution_mode
        result = self.engine.admit(replace(candidate, execution_mode=mode))
        if (
            result.ok
            and result.signal.kind is SignalKind.NEW
            and mode is ExecutionMode.ASSISTED
            and self.config.auto_confirm
        ):
            return self.engine.confirm(result.signal_id)
        return result

    def handle_voice(self, transcript: str) -> DispatchResult:
        intent = self.commands.interpret(transcript)
        logger.info("Voice command %s (target=%s)", intent.command.value, intent.target_id)
        return self.dispatcher.dispatch(intent)

    def kill_switch(self):
        return self.engine.close_all(fallback_pnl=self.config.kill_switch_pnl)

    # ------------------------------------------------------------------
    def start(self) -> None:
        self.monitor.start()

    def stop(self) -> None:
        self.monitor.close()

    def report(self, out_dir: str = "results"):
        """Write the session report and return its metrics."""
        return generate_session_report(
            self.state.list_signals(),
            self.state.list_positions(),
            self.state.logs(),
            out_dir=out_dir,
        )
