"""
Voice and text command handling.

`CommandInterpreter` maps a spoken or typed transcript onto one of a
closed set of commands.  `CommandDispatcher` applies a recognised
command to the lifecycle engine.  UNKNOWN commands are logged and
rejected; they never reach the engine.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..core.models import AuditCategory, ExecutionMode, SignalStatus
from ..engine.lifecycle import ActionResult, LifecycleEngine
from .interpreter import repair_json


logger = logging.getLogger(__name__)


class Command(str, Enum):
    CONFIRM_TRADE = "CONFIRM_TRADE"
    CANCEL_SIGNAL = "CANCEL_SIGNAL"
    CLOSE_POSITION = "CLOSE_POSITION"
    SHOW_TRADES = "SHOW_TRADES"
    PAUSE_TRADING = "PAUSE_TRADING"
    TOGGLE_ASSISTED = "TOGGLE_ASSISTED"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class CommandIntent:
    command: Command
    target_id: Optional[str] = None


# Checked in order; the first matching rule wins.
_RULES = [
    (Command.PAUSE_TRADING, re.compile(r"\b(pause|stop trading|halt)\b", re.IGNORECASE)),
    (Command.TOGGLE_ASSISTED, re.compile(r"\b(toggle|assisted|manual mode|switch mode)\b", re.IGNORECASE)),
    (Command.CLOSE_POSITION, re.compile(r"\b(close|exit|flatten)\b", re.IGNORECASE)),
    (Command.CANCEL_SIGNAL, re.compile(r"\b(cancel|skip|reject|ignore)\b", re.IGNORECASE)),
    (Command.CONFIRM_TRADE, re.compile(r"\b(confirm|approve|take (?:the|this) trade|go ahead|execute)\b", re.IGNORECASE)),
    (Command.SHOW_TRADES, re.compile(r"\b(show|list|dashboard|trades|positions|pnl)\b", re.IGNORECASE)),
]
_TARGET_RE = re.compile(r"\b(?:close|exit|flatten)\b(?:\s+(?:my|the|all))*\s+([A-Za-z]{2,10})\b", re.IGNORECASE)
_NOT_TARGETS = {'all', 'my', 'the', 'position', 'positions', 'trade', 'trades', 'everything', 'it', 'now'}


class CommandInterpreter:
    """Turn a transcript into a `CommandIntent`.

    Parameters
    ----------
    model : callable, optional
        ``model(transcript) -> str`` returning JSON such as
        ``{"command": "CLOSE_POSITION", "targetId": "BTC"}``.  Keyword
        rules are used when omitted.
    """

    def __init__(self, model: Optional[Callable[[str], str]] = None) -> None:
        self.model = model

    def interpret(self, transcript: str) -> CommandIntent:
        if not transcript or not transcript.strip():
            return CommandIntent(Command.UNKNOWN)
        if self.model is not None:
            try:
                return coerce_intent(repair_json(self.model(transcript)))
            except Exception as exc:
                logger.error("Command model call failed: %s", exc)
                return CommandIntent(Command.UNKNOWN)
        for command, pattern in _RULES:
            if pattern.search(transcript):
                target = None
                if command is Command.CLOSE_POSITION:
                    match = _TARGET_RE.search(transcript)
                    if match and match.group(1).lower() not in _NOT_TARGETS:
                        target = match.group(1).upper()
                return CommandIntent(command, target)
        return CommandIntent(Command.UNKNOWN)


def coerce_intent(payload: Optional[Dict[str, Any]]) -> CommandIntent:
    """Validate model output into an intent; anything odd is UNKNOWN."""
    if not payload:
        return CommandIntent(Command.UNKNOWN)
    raw = str(payload.get('command', "")).upper()
    if raw not in Command.__members__:
        return CommandIntent(Command.UNKNOWN)
    target = payload.get('targetId', payload.get('target_id'))
    return CommandIntent(Command(raw), str(target) if target else None)


@dataclass
class DispatchResult:
    """Outcome of a dispatched command, with feedback for the user."""
    command: Command
    accepted: bool
    feedback: str
    results: List[ActionResult] = field(default_factory=list)
    snapshot: Optional[Dict[str, Any]] = None


class CommandDispatcher:
    """Apply command intents to the lifecycle engine."""

    def __init__(self, engine: LifecycleEngine) -> None:
        self.engine = engine
        self.state = engine.state

    def dispatch(self, intent: CommandIntent) -> DispatchResult:
        handler = {
            Command.CONFIRM_TRADE: self._confirm,
            Command.CANCEL_SIGNAL: self._cancel,
            Command.CLOSE_POSITION: self._close,
            Command.SHOW_TRADES: self._show,
            Command.PAUSE_TRADING: self._pause,
            Command.TOGGLE_ASSISTED: self._toggle,
        }.get(intent.command)
        if handler is None:
            logger.info("Ignoring unrecognised command")
            return DispatchResult(Command.UNKNOWN, False, "Command not recognized. Please try again.")
        return handler(intent)

    def _confirm(self, intent: CommandIntent) -> DispatchResult:
        pending = self.state.list_signals(SignalStatus.QUEUED, SignalStatus.PENDING_CONFIRMATION)
        if not pending:
            return DispatchResult(intent.command, False, "No pending trades found to confirm.")
        signal = pending[0]
        self.engine.record(AuditCategory.USER_ACTION, f"Voice confirm: {signal.pair}")
        result = self.engine.confirm(signal.id)
        if not result.ok:
            return DispatchResult(intent.command, False, f"Could not confirm {signal.pair}: {result.reason}.", [result])
        return DispatchResult(intent.command, True,
                              f"Trade confirmed for {signal.pair}. Monitoring for entry.", [result])

    def _cancel(self, intent: CommandIntent) -> DispatchResult:
        live = [s for s in self.state.list_signals() if s.status.is_pre_execution]
        if not live:
            return DispatchResult(intent.command, False, "No active signals found to cancel.")
        signal = live[0]
        self.engine.record(AuditCategory.USER_ACTION, f"Voice cancel: {signal.pair}")
        result = self.engine.cancel(signal.id)
        return DispatchResult(intent.command, result.ok,
                              f"Last signal for {signal.pair} has been cancelled." if result.ok
                              else f"Could not cancel {signal.pair}: {result.reason}.", [result])

    def _close(self, intent: CommandIntent) -> DispatchResult:
        target = intent.target_id.upper() if intent.target_id else None
        positions = [p for p in self.state.list_positions() if not target or target in p.pair.upper()]
        if not positions:
            feedback = f"No active {target} positions found." if target else "No active positions found."
            return DispatchResult(intent.command, False, feedback)
        self.engine.record(AuditCategory.USER_ACTION, f"Voice close: {target or 'All positions'}")
        results = [self.engine.close_position(p.id) for p in positions]
        feedback = f"Closing all {target} positions." if target else "Closing active positions."
        return DispatchResult(intent.command, all(r.ok for r in results), feedback, results)

    def _show(self, intent: CommandIntent) -> DispatchResult:
        self.engine.record(AuditCategory.USER_ACTION, "Voice navigate: Dashboard")
        snapshot = {
            'signals': [s.to_dict() for s in self.state.list_signals()],
            'positions': [p.to_dict() for p in self.state.list_positions()],
        }
        count = len(snapshot['positions'])
        return DispatchResult(intent.command, True, f"You have {count} open positions.", snapshot=snapshot)

    def _pause(self, intent: CommandIntent) -> DispatchResult:
        self.engine.set_execution_mode(ExecutionMode.MANUAL, "Voice pause: Manual mode activated")
        return DispatchResult(intent.command, True, "Trading paused. Manual mode activated.")

    def _toggle(self, intent: CommandIntent) -> DispatchResult:
        current = self.state.execution_mode
        new_mode = ExecutionMode.MANUAL if current is ExecutionMode.ASSISTED else ExecutionMode.ASSISTED
        self.engine.set_execution_mode(new_mode, "Voice toggle execution mode")
        return DispatchResult(intent.command, True, f"Execution mode set to {new_mode.value}.")
