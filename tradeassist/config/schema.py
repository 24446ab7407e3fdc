"""
Configuration schema and loader.

This module defines dataclasses that mirror the expected structure of
the YAML configuration file (`config.yaml`).  A helper function
`load_config()` reads a YAML file from disk and returns an instance
of `Config` populated with reasonable defaults for any missing
fields.

The account section only seeds a fresh state file: once a session has
persisted its credentials, the stored account profile wins over the
values found here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import yaml

MAX_RISK_PERCENT = 10.0


@dataclass
class AccountConfig:
    """Initial account risk profile.

    Attributes
    ----------
    futures_balance : float
        Futures wallet balance in quote currency units.
    risk_percent : float
        Percentage of the balance put at risk by a single trade.  Must be
        in the interval ``(0, 10]``.
    session_status : str
        Exchange session state: ``UNSET``, ``VALID`` or ``EXPIRED``.
    """

    futures_balance: float = 1000.0
    risk_percent: float = 1.0
    session_status: str = "UNSET"


@dataclass
class MonitorConfig:
    """Market monitor settings.

    Attributes
    ----------
    interval_seconds : float
        Seconds between two ticks.  Also used as the price fetch timeout.
    max_workers : int
        Size of the thread pool used to fetch prices concurrently.
    """

    interval_seconds: float = 5.0
    max_workers: int = 8


@dataclass
class PriceFeedConfig:
    """Price source settings.

    Attributes
    ----------
    kind : str
        ``http`` for the public ticker endpoint or ``static`` for a fixed
        price table (paper sessions).
    base_url : str
        Ticker endpoint; the pair is passed as the ``symbol`` query param.
    timeout : float
        Per-request HTTP timeout in seconds.
    static_prices : dict
        Pair to price mapping used by the ``static`` feed.
    """

    kind: str = "http"
    base_url: str = "https://api.binance.com/api/v3/ticker/price"
    timeout: float = 3.0
    static_prices: Dict[str, float] = field(default_factory=dict)


@dataclass
class StorageConfig:
    """Where session state lives and how much audit history is kept."""

    state_file: str = "state/tradeassist.json"
    max_log_entries: int = 100


@dataclass
class InterpreterConfig:
    """Alert interpreter settings."""

    max_input_chars: int = 2000


@dataclass
class Config:
    """Root configuration for the trade assistant.

    Attributes
    ----------
    account : AccountConfig
        Initial risk profile.
    execution_mode : str
        ``ASSISTED`` or ``MANUAL``.  New signals inherit it.
    auto_confirm : bool
        In ``ASSISTED`` mode, confirm NEW signals for conditional entry as
        soon as they are admitted.
    max_size_multiple : float
        Execution is refused when the position size reaches
        ``balance * max_size_multiple``.
    kill_switch_pnl : float
        Realized PnL booked for waiting signals swept by the kill switch.
    monitor : MonitorConfig
        Market monitor settings.
    price_feed : PriceFeedConfig
        Price source settings.
    storage : StorageConfig
        Persistence settings.
    interpreter : InterpreterConfig
        Alert interpreter settings.
    log_file : str or None
        Optional rotating log file.
    """

    account: AccountConfig = field(default_factory=AccountConfig)
    execution_mode: str = "ASSISTED"
    auto_confirm: bool = False
    max_size_multiple: float = 20.0
    kill_switch_pnl: float = 0.0
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    price_feed: PriceFeedConfig = field(default_factory=PriceFeedConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    interpreter: InterpreterConfig = field(default_factory=InterpreterConfig)
    log_file: Optional[str] = None


def _merge_dict(defaults: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge two dictionaries.

    The values in `override` take precedence over those in `defaults`.
    This helper is used when loading YAML into nested dataclasses.
    """
    result: Dict[str, Any] = defaults.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge_dict(result[key], value)
        else:
            result[key] = value
    return result


def validate_config(cfg: Config) -> Config:
    """Raise `ValueError` when a setting is outside its allowed range."""
    if cfg.account.futures_balance < 0:
        raise ValueError(f"futures_balance must be >= 0, got {cfg.account.futures_balance}")
    if not 0 < cfg.account.risk_percent <= MAX_RISK_PERCENT:
        raise ValueError(
            f"risk_percent must be in (0, {MAX_RISK_PERCENT}], got {cfg.account.risk_percent}"
        )
    if cfg.account.session_status not in ("UNSET", "VALID", "EXPIRED"):
        raise ValueError(f"Unknown session_status: {cfg.account.session_status}")
    if cfg.execution_mode not in ("ASSISTED", "MANUAL"):
        raise ValueError(f"Unknown execution_mode: {cfg.execution_mode}")
    if cfg.monitor.interval_seconds <= 0:
        raise ValueError("monitor.interval_seconds must be positive")
    if cfg.monitor.max_workers < 1:
        raise ValueError("monitor.max_workers must be at least 1")
    if cfg.max_size_multiple <= 0:
        raise ValueError("max_size_multiple must be positive")
    if cfg.price_feed.kind not in ("http", "static"):
        raise ValueError(f"Unknown price_feed.kind: {cfg.price_feed.kind}")
    return cfg


def load_config(path: str) -> Config:
    """Load a configuration file from the given YAML path.

    Parameters
    ----------
    path : str
        Path to the YAML file.

    Returns
    -------
    Config
        A populated configuration object.  Missing fields are filled with
        sensible defaults defined in the dataclasses.

    Raises
    ------
    ValueError
        If a value is outside its allowed range.
    """
    with open(path, "r", encoding="utf-8") as fh:
        raw: Dict[str, Any] = yaml.safe_load(fh) or {}

    defaults: Dict[str, Any] = {
        'account': {
            'futures_balance': 1000.0,
            'risk_percent': 1.0,
            'session_status': "UNSET",
        },
        'execution_mode': "ASSISTED",
        'auto_confirm': False,
        'max_size_multiple': 20.0,
        'kill_switch_pnl': 0.0,
        'monitor': {
            'interval_seconds': 5.0,
            'max_workers': 8,
        },
        'price_feed': {
            'kind': "http",
            'base_url': "https://api.binance.com/api/v3/ticker/price",
            'timeout': 3.0,
            'static_prices': {},
        },
        'storage': {
            'state_file': "state/tradeassist.json",
            'max_log_entries': 100,
        },
        'interpreter': {
            'max_input_chars': 2000,
        },
        'log_file': None,
    }

    merged = _merge_dict(defaults, raw)

    account = merged['account']
    feed = merged['price_feed']
    cfg = Config(
        account=AccountConfig(
            futures_balance=float(account['futures_balance']),
            risk_percent=float(account['risk_percent']),
            session_status=str(account['session_status']).upper(),
        ),
        execution_mode=str(merged['execution_mode']).upper(),
        auto_confirm=bool(merged['auto_confirm']),
        max_size_multiple=float(merged['max_size_multiple']),
        kill_switch_pnl=float(merged['kill_switch_pnl']),
        monitor=MonitorConfig(
            interval_seconds=float(merged['monitor']['interval_seconds']),
            max_workers=int(merged['monitor']['max_workers']),
        ),
        price_feed=PriceFeedConfig(
            kind=str(feed['kind']).lower(),
            base_url=str(feed['base_url']),
            timeout=float(feed['timeout']),
            static_prices={str(k).upper(): float(v) for k, v in (feed['static_prices'] or {}).items()},
        ),
        storage=StorageConfig(**merged['storage']),
        interpreter=InterpreterConfig(**merged['interpreter']),
        log_file=merged.get('log_file'),
    )
    return validate_config(cfg)
