import os
import sys
import itertools
import pandas as pd

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from tradeassist.core.models import (
    AccountProfile,
    AuditCategory,
    Direction,
    ExecutionMode,
    SessionStatus,
    Signal,
    SignalStatus,
)
from tradeassist.data.commands import Command, CommandDispatcher, CommandIntent, CommandInterpreter
from tradeassist.engine.lifecycle import LifecycleEngine
from tradeassist.engine.state import AppState

import unittest


def make_clock(start: str = "2024-05-01 12:00"):
    base = pd.Timestamp(start, tz="UTC")
    counter = itertools.count()
    return lambda: base + pd.Timedelta(seconds=next(counter))


class TestCommandInterpreter(unittest.TestCase):
    def setUp(self) -> None:
        self.interpreter = CommandInterpreter()

    def test_keyword_commands(self) -> None:
        cases = {
            "confirm the trade": Command.CONFIRM_TRADE,
            "go ahead": Command.CONFIRM_TRADE,
            "cancel the last signal": Command.CANCEL_SIGNAL,
            "show me my trades": Command.SHOW_TRADES,
            "pause everything": Command.PAUSE_TRADING,
            "switch mode": Command.TOGGLE_ASSISTED,
            "close all positions": Command.CLOSE_POSITION,
            "what is the weather like": Command.UNKNOWN,
            "": Command.UNKNOWN,
        }
        for transcript, expected in cases.items():
            self.assertEqual(self.interpreter.interpret(transcript).command, expected, msg=transcript)

    def test_close_target_extraction(self) -> None:
        self.assertEqual(self.interpreter.interpret("close my BTC position").target_id, "BTC")
        self.assertEqual(self.interpreter.interpret("close eth").target_id, "ETH")
        self.assertIsNone(self.interpreter.interpret("close all positions").target_id)
        self.assertIsNone(self.interpreter.interpret("close all").target_id)

    def test_model_backend(self) -> None:
        model = CommandInterpreter(model=lambda t: '{"command": "CLOSE_POSITION", "targetId": "SOL"}')
        self.assertEqual(model.interpret("get me out of sol"), CommandIntent(Command.CLOSE_POSITION, "SOL"))
        bogus = CommandInterpreter(model=lambda t: '{"command": "SELL_EVERYTHING"}')
        self.assertEqual(bogus.interpret("sell it all").command, Command.UNKNOWN)


class TestCommandDispatcher(unittest.TestCase):
    def setUp(self) -> None:
        account = AccountProfile(futures_balance=1000.0, risk_percent=1.0, session_status=SessionStatus.VALID)
        self.state = AppState(account=account, clock=make_clock())
        self.engine = LifecycleEngine(self.state)
        self.dispatcher = CommandDispatcher(self.engine)

    def admit(self, signal_id, pair="BTCUSDT", entry=64800.0, stop=63200.0):
        self.engine.admit(Signal(id=signal_id, pair=pair, direction=Direction.LONG, entry_prices=[entry],
                                 stop_loss=stop, take_profits=[entry * 1.05], leverage=5.0))

    def test_unknown_is_never_acted_on(self) -> None:
        self.admit("sig-1")
        before = self.state.to_dict()
        result = self.dispatcher.dispatch(CommandIntent(Command.UNKNOWN))
        self.assertFalse(result.accepted)
        self.assertEqual(self.state.to_dict(), before)

    def test_confirm_picks_newest_queued_signal(self) -> None:
        self.admit("old")
        self.admit("new", pair="ETHUSDT", entry=3520.0, stop=3400.0)
        result = self.dispatcher.dispatch(CommandIntent(Command.CONFIRM_TRADE))
        self.assertTrue(result.accepted)
        self.assertEqual(self.state.get_signal("new").status, SignalStatus.WAITING_FOR_ENTRY)
        self.assertEqual(self.state.get_signal("old").status, SignalStatus.QUEUED)
        self.assertIn("Voice confirm: ETHUSDT", [e.message for e in self.state.logs(AuditCategory.USER_ACTION)])

    def test_confirm_without_pending_signal(self) -> None:
        result = self.dispatcher.dispatch(CommandIntent(Command.CONFIRM_TRADE))
        self.assertFalse(result.accepted)
        self.assertEqual(self.state.logs(), [])

    def test_cancel_picks_newest_live_signal(self) -> None:
        self.admit("sig-1")
        self.engine.confirm("sig-1")
        result = self.dispatcher.dispatch(CommandIntent(Command.CANCEL_SIGNAL))
        self.assertTrue(result.accepted)
        self.assertEqual(self.state.get_signal("sig-1").status, SignalStatus.CANCELLED)

    def test_close_filters_positions_by_target(self) -> None:
        self.admit("btc")
        self.admit("eth", pair="ETHUSDT", entry=3520.0, stop=3400.0)
        self.engine.confirm("btc", immediate=True)
        self.engine.confirm("eth", immediate=True)
        result = self.dispatcher.dispatch(CommandIntent(Command.CLOSE_POSITION, "btc"))
        self.assertTrue(result.accepted)
        self.assertEqual(self.state.get_signal("btc").status, SignalStatus.CLOSED)
        self.assertEqual(self.state.get_signal("eth").status, SignalStatus.EXECUTED)

        result = self.dispatcher.dispatch(CommandIntent(Command.CLOSE_POSITION, "SOL"))
        self.assertFalse(result.accepted)
        result = self.dispatcher.dispatch(CommandIntent(Command.CLOSE_POSITION))
        self.assertTrue(result.accepted)
        self.assertEqual(self.state.list_positions(), [])

    def test_show_trades_returns_snapshot(self) -> None:
        self.admit("sig-1")
        self.engine.confirm("sig-1", immediate=True)
        result = self.dispatcher.dispatch(CommandIntent(Command.SHOW_TRADES))
        self.assertEqual(len(result.snapshot['positions']), 1)
        self.assertEqual(result.feedback, "You have 1 open positions.")

    def test_pause_and_toggle_execution_mode(self) -> None:
        self.dispatcher.dispatch(CommandIntent(Command.PAUSE_TRADING))
        self.assertEqual(self.state.execution_mode, ExecutionMode.MANUAL)
        self.dispatcher.dispatch(CommandIntent(Command.TOGGLE_ASSISTED))
        self.assertEqual(self.state.execution_mode, ExecutionMode.ASSISTED)
        self.dispatcher.dispatch(CommandIntent(Command.TOGGLE_ASSISTED))
        self.assertEqual(self.state.execution_mode, ExecutionMode.MANUAL)


if __name__ == '__main__':
    unittest.main()
