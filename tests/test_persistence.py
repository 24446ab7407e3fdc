import os
import sys
import json
import itertools
import tempfile
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
    SignalKind,
    SignalStatus,
)
from tradeassist.engine.lifecycle import LifecycleEngine
from tradeassist.engine.state import AppState
from tradeassist.utils.persistence import JsonStateStore, empty_state, load_state, save_state
from tradeassist.utils.timeutils import parse_timestamp

import unittest


def make_clock(start: str = "2024-05-01 12:00"):
    base = pd.Timestamp(start, tz="UTC")
    counter = itertools.count()
    return lambda: base + pd.Timedelta(seconds=next(counter))


class TestJsonStateStore(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmp.name, "state", "session.json")

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_missing_file_loads_empty_state(self) -> None:
        self.assertIsNone(load_state(self.path))
        self.assertEqual(JsonStateStore(self.path).load_all(), empty_state())

    def test_corrupt_file_resets_to_empty_with_warning(self) -> None:
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, "w", encoding="utf-8") as fh:
            fh.write('{"signals": [ {"id": ')
        with self.assertLogs(level="WARNING"):
            state = JsonStateStore(self.path).load_all()
        self.assertEqual(state, empty_state())

    def test_unexpected_layout_resets_to_empty(self) -> None:
        save_state(self.path, [1, 2, 3])
        with self.assertLogs(level="WARNING"):
            self.assertEqual(JsonStateStore(self.path).load_all(), empty_state())

    def test_sections_of_wrong_type_are_ignored(self) -> None:
        save_state(self.path, {'signals': {"not": "a list"}, 'settings': {'execution_mode': "MANUAL"}})
        state = JsonStateStore(self.path).load_all()
        self.assertEqual(state['signals'], [])
        self.assertEqual(state['settings'], {'execution_mode': "MANUAL"})

    def test_save_leaves_no_temporary_file(self) -> None:
        JsonStateStore(self.path).save(empty_state())
        self.assertEqual(os.listdir(os.path.dirname(self.path)), ["session.json"])


class TestStateReload(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.store = JsonStateStore(os.path.join(self.tmp.name, "session.json"))

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_session_survives_restart(self) -> None:
        account = AccountProfile(futures_balance=1000.0, risk_percent=1.0, session_status=SessionStatus.VALID)
        state = AppState.load(self.store, default_account=account, clock=make_clock())
        engine = LifecycleEngine(state)
        engine.admit(Signal(id="sig-1", pair="BTCUSDT", direction=Direction.LONG, entry_prices=[64800.0],
                            stop_loss=63200.0, take_profits=[67000.0], leverage=5.0))
        engine.confirm("sig-1", immediate=True)
        engine.set_execution_mode(ExecutionMode.MANUAL)

        reloaded = AppState.load(self.store, default_account=AccountProfile())
        self.assertEqual(reloaded.get_signal("sig-1"), state.get_signal("sig-1"))
        self.assertEqual(reloaded.get_position("sig-1"), state.get_position("sig-1"))
        self.assertEqual(reloaded.logs(), state.logs())
        self.assertEqual(reloaded.account, account)
        self.assertEqual(reloaded.execution_mode, ExecutionMode.MANUAL)

    def test_signal_with_naive_timestamp_is_persisted(self) -> None:
        state = AppState.load(self.store, clock=make_clock())
        engine = LifecycleEngine(state)
        engine.admit(Signal(id="a", pair="BTCUSDT", kind=SignalKind.CLOSE))
        engine.admit(Signal(id="b", pair="ETHUSDT", kind=SignalKind.CLOSE,
                            created_at=pd.Timestamp("2024-05-01 12:00")))
        stored = [record['id'] for record in self.store.load_all()['signals']]
        self.assertEqual(sorted(stored), ["a", "b"])
        self.assertEqual(len(AppState.load(self.store).list_signals()), 2)

    def test_unreadable_records_are_skipped(self) -> None:
        raw = empty_state()
        raw['signals'] = [
            {'id': "ok", 'pair': "BTCUSDT", 'status': "QUEUED"},
            {'id': "bad", 'pair': "BTCUSDT", 'status': "TELEPORTED"},
            {'pair': "no id"},
        ]
        self.store.save(raw)
        with self.assertLogs(level="WARNING"):
            state = AppState.load(self.store)
        self.assertEqual([s.id for s in state.list_signals()], ["ok"])
        self.assertEqual(state.get_signal("ok").status, SignalStatus.QUEUED)

    def test_state_file_is_plain_json(self) -> None:
        state = AppState.load(self.store, clock=make_clock())
        LifecycleEngine(state).record(AuditCategory.SYSTEM, "hello")
        with open(self.store.path, encoding="utf-8") as fh:
            data = json.load(fh)
        self.assertEqual(set(data), {'signals', 'positions', 'logs', 'credentials', 'settings'})
        self.assertEqual(data['logs'][0]['message'], "hello")


class TestTimestamps(unittest.TestCase):
    def test_parse_timestamp(self) -> None:
        self.assertEqual(parse_timestamp("2024-05-01T12:00:00+00:00"), pd.Timestamp("2024-05-01 12:00", tz="UTC"))
        self.assertEqual(parse_timestamp(1714564800000), pd.Timestamp("2024-05-01 12:00", tz="UTC"))
        self.assertIsNone(parse_timestamp("not a date"))
        self.assertIsNone(parse_timestamp(None))


if __name__ == '__main__':
    unittest.main()
