import os
import sys
import itertools
import tempfile
import pandas as pd

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from tradeassist.app import main
from tradeassist.config.schema import AccountConfig, Config, MonitorConfig, load_config
from tradeassist.core.models import AuditCategory, ExecutionMode, SignalKind, SignalStatus
from tradeassist.data.price_feed import StaticPriceFeed
from tradeassist.risk.calculator import calculate_risk
from tradeassist.session import TradingSession

import unittest


def make_clock(start: str = "2024-05-01 12:00"):
    base = pd.Timestamp(start, tz="UTC")
    counter = itertools.count()
    return lambda: base + pd.Timedelta(seconds=next(counter))


def make_config() -> Config:
    return Config(
        account=AccountConfig(futures_balance=1000.0, risk_percent=1.0, session_status="VALID"),
        monitor=MonitorConfig(interval_seconds=0.5, max_workers=2),
    )


class TestAlertToClosedTrade(unittest.TestCase):
    def setUp(self) -> None:
        self.feed = StaticPriceFeed()
        self.session = TradingSession(make_config(), price_feed=self.feed, persist=False, clock=make_clock())

    def tearDown(self) -> None:
        self.session.stop()

    def test_full_lifecycle(self) -> None:
        result = self.session.ingest("BTC/USDT LONG ENTRY 64800 SL 63200 TP 67000 x5")
        self.assertTrue(result.ok)
        signal_id = result.signal_id
        signal = self.session.state.get_signal(signal_id)
        self.assertEqual(signal.status, SignalStatus.QUEUED)
        self.assertAlmostEqual(signal.calculated_size, 405.0, places=2)
        self.assertAlmostEqual(calculate_risk(signal, self.session.state.account).liquidation_distance, 20.0)

        self.assertTrue(self.session.engine.confirm(signal_id).ok)
        self.assertEqual(self.session.state.get_signal(signal_id).status, SignalStatus.WAITING_FOR_ENTRY)

        self.feed.set_price("BTCUSDT", 64750.0)
        self.session.monitor.tick()
        self.assertEqual(self.session.state.get_signal(signal_id).status, SignalStatus.EXECUTED)
        position = self.session.state.get_position(signal_id)
        self.assertAlmostEqual(position.size, 405.0, places=2)

        self.feed.set_price("BTCUSDT", 64152.0)
        self.session.monitor.tick()
        self.assertAlmostEqual(self.session.state.get_position(signal_id).unrealized_pnl, -20.25, places=6)

        closed = self.session.handle_voice("close my BTC position")
        self.assertTrue(closed.accepted)
        signal = self.session.state.get_signal(signal_id)
        self.assertEqual(signal.status, SignalStatus.CLOSED)
        self.assertAlmostEqual(signal.pnl, -20.25, places=6)

        categories = [e.category for e in reversed(self.session.state.logs())]
        self.assertEqual(categories[0], AuditCategory.SIGNAL)
        self.assertEqual(categories[-1], AuditCategory.TRADE)

    def test_unparseable_alert_is_not_admitted(self) -> None:
        result = self.session.ingest("gm everyone")
        self.assertFalse(result.ok)
        self.assertEqual(self.session.state.list_signals(), [])

    def test_update_message_links_to_open_signal(self) -> None:
        first = self.session.ingest("ETH/USDT SHORT ENTRY 3520 SL 3600 TP 3400")
        update = self.session.ingest("UPDATE: Move SL on ETH/USDT to 3450.")
        linked = self.session.state.get_signal(update.signal_id)
        self.assertEqual(linked.kind, SignalKind.UPDATE)
        self.assertEqual(linked.parent_id, first.signal_id)

    def test_auto_confirm_in_assisted_mode(self) -> None:
        self.session.config.auto_confirm = True
        result = self.session.ingest("BTC/USDT LONG ENTRY 64800 SL 63200 TP 67000 x5")
        self.assertEqual(self.session.state.get_signal(result.signal_id).status, SignalStatus.WAITING_FOR_ENTRY)

        self.session.handle_voice("pause trading")
        self.assertEqual(self.session.state.execution_mode, ExecutionMode.MANUAL)
        manual = self.session.ingest("ETH/USDT SHORT ENTRY 3520 SL 3600 TP 3400")
        signal = self.session.state.get_signal(manual.signal_id)
        self.assertEqual(signal.status, SignalStatus.QUEUED)
        self.assertEqual(signal.execution_mode, ExecutionMode.MANUAL)

    def test_kill_switch(self) -> None:
        first = self.session.ingest("BTC/USDT LONG ENTRY 64800 SL 63200 TP 67000 x5")
        self.session.engine.confirm(first.signal_id, immediate=True)
        second = self.session.ingest("ETH/USDT SHORT ENTRY 3520 SL 3600 TP 3400")
        self.session.engine.confirm(second.signal_id)
        self.assertEqual(len(self.session.kill_switch()), 2)
        self.assertEqual(self.session.state.list_positions(), [])
        self.assertEqual(self.session.state.get_signal(second.signal_id).pnl, 0.0)


class TestCommandLine(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.config_path = os.path.join(self.tmp.name, "config.yaml")
        with open(self.config_path, "w", encoding="utf-8") as fh:
            fh.write(
                "account:\n"
                "  session_status: VALID\n"
                "price_feed:\n"
                "  kind: static\n"
                "storage:\n"
                f"  state_file: {os.path.join(self.tmp.name, 'state.json')}\n"
            )

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def run_cli(self, *args) -> int:
        return main(['--config', self.config_path, *args])

    def test_commands_share_persisted_session(self) -> None:
        self.assertEqual(self.run_cli('ingest', "BTC/USDT LONG ENTRY 64800 SL 63200 TP 67000 x5"), 0)
        session = TradingSession(load_config(self.config_path))
        signal = session.state.list_signals()[0]
        session.stop()

        self.assertEqual(self.run_cli('confirm', signal.id, '--now'), 0)
        self.assertEqual(self.run_cli('cancel', signal.id), 1)
        self.assertEqual(self.run_cli('close', signal.id), 0)
        self.assertEqual(self.run_cli('status'), 0)
        out_dir = os.path.join(self.tmp.name, "results")
        self.assertEqual(self.run_cli('report', '--out-dir', out_dir), 0)
        self.assertTrue(os.path.exists(os.path.join(out_dir, 'summary.json')))

        session = TradingSession(load_config(self.config_path))
        self.assertEqual(session.state.get_signal(signal.id).status, SignalStatus.CLOSED)
        session.stop()

    def test_unknown_voice_command_fails(self) -> None:
        self.assertEqual(self.run_cli('voice', "sing me a song"), 1)


if __name__ == '__main__':
    unittest.main()
