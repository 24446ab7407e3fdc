"""
Signal, position, account and audit models.

These dataclasses are the objects passed between the interpreter, the
lifecycle engine, the market monitor and the persistence layer.  The
status values form one closed enumeration shared by every component;
the legal edges between them live in `tradeassist.engine.lifecycle`.

Every model knows how to turn itself into a JSON-friendly dictionary
and back, so the state file stays readable and the engine never has to
deal with raw dictionaries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
import pandas as pd

from ..utils.timeutils import parse_timestamp


class SignalStatus(str, Enum):
    RECEIVED = "RECEIVED"
    PARSED = "PARSED"
    QUEUED = "QUEUED"
    PENDING_CONFIRMATION = "PENDING_CONFIRMATION"
    WAITING_FOR_ENTRY = "WAITING_FOR_ENTRY"
    EXECUTING = "EXECUTING"
    EXECUTED = "EXECUTED"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (SignalStatus.CLOSED, SignalStatus.CANCELLED, SignalStatus.FAILED)

    @property
    def is_pre_execution(self) -> bool:
        return self in PRE_EXECUTION_STATES


PRE_EXECUTION_STATES = frozenset({
    SignalStatus.RECEIVED,
    SignalStatus.PARSED,
    SignalStatus.QUEUED,
    SignalStatus.PENDING_CONFIRMATION,
    SignalStatus.WAITING_FOR_ENTRY,
    SignalStatus.EXECUTING,
})


class SignalKind(str, Enum):
    NEW = "NEW"
    UPDATE = "UPDATE"
    CLOSE = "CLOSE"


class Direction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class EntryMode(str, Enum):
    IMMEDIATE = "IMMEDIATE"
    CONDITIONAL = "CONDITIONAL"


class ExecutionMode(str, Enum):
    MANUAL = "MANUAL"
    ASSISTED = "ASSISTED"


class SessionStatus(str, Enum):
    UNSET = "UNSET"
    VALID = "VALID"
    EXPIRED = "EXPIRED"


class AuditCategory(str, Enum):
    SIGNAL = "SIGNAL"
    USER_ACTION = "USER_ACTION"
    SYSTEM = "SYSTEM"
    ERROR = "ERROR"
    TRADE = "TRADE"


def _ts(value: Optional[pd.Timestamp]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class Signal:
    """A structured trade instruction tracked through its lifecycle."""
    id: str
    pair: str
    kind: SignalKind = SignalKind.NEW
    direction: Optional[Direction] = None
    entry_prices: List[float] = field(default_factory=list)
    stop_loss: float = 0.0
    take_profits: List[float] = field(default_factory=list)
    leverage: float = 1.0
    status: SignalStatus = SignalStatus.QUEUED
    parent_id: Optional[str] = None
    calculated_size: Optional[float] = None
    max_risk_amount: Optional[float] = None
    source: str = ""
    raw_text: str = ""
    notes: str = ""
    created_at: Optional[pd.Timestamp] = None
    entry_mode: EntryMode = EntryMode.CONDITIONAL
    execution_mode: ExecutionMode = ExecutionMode.ASSISTED
    pnl: Optional[float] = None

    @property
    def entry_price(self) -> float:
        """First entry price, ``0.0`` when the signal carries none."""
        return float(self.entry_prices[0]) if self.entry_prices else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'pair': self.pair,
            'kind': self.kind.value,
            'direction': self.direction.value if self.direction else None,
            'entry_prices': list(self.entry_prices),
            'stop_loss': self.stop_loss,
            'take_profits': list(self.take_profits),
            'leverage': self.leverage,
            'status': self.status.value,
            'parent_id': self.parent_id,
            'calculated_size': self.calculated_size,
            'max_risk_amount': self.max_risk_amount,
            'source': self.source,
            'raw_text': self.raw_text,
            'notes': self.notes,
            'created_at': _ts(self.created_at),
            'entry_mode': self.entry_mode.value,
            'execution_mode': self.execution_mode.value,
            'pnl': self.pnl,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Signal":
        direction = data.get('direction')
        return cls(
            id=str(data['id']),
            pair=str(data['pair']),
            kind=SignalKind(data.get('kind', SignalKind.NEW.value)),
            direction=Direction(direction) if direction else None,
            entry_prices=[float(p) for p in data.get('entry_prices') or []],
            stop_loss=float(data.get('stop_loss') or 0.0),
            take_profits=[float(p) for p in data.get('take_profits') or []],
            leverage=float(data.get('leverage') or 1.0),
            status=SignalStatus(data.get('status', SignalStatus.QUEUED.value)),
            parent_id=data.get('parent_id'),
            calculated_size=data.get('calculated_size'),
            max_risk_amount=data.get('max_risk_amount'),
            source=data.get('source', ""),
            raw_text=data.get('raw_text', ""),
            notes=data.get('notes', ""),
            created_at=parse_timestamp(data.get('created_at')),
            entry_mode=EntryMode(data.get('entry_mode', EntryMode.CONDITIONAL.value)),
            execution_mode=ExecutionMode(data.get('execution_mode', ExecutionMode.ASSISTED.value)),
            pnl=data.get('pnl'),
        )


@dataclass
class Position:
    """An executed signal with live market exposure.  Shares the signal id."""
    id: str
    pair: str
    direction: Direction
    entry_price: float
    leverage: float
    size: float
    entry_time: pd.Timestamp
    current_price: float
    unrealized_pnl: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'pair': self.pair,
            'direction': self.direction.value,
            'entry_price': self.entry_price,
            'leverage': self.leverage,
            'size': self.size,
            'entry_time': _ts(self.entry_time),
            'current_price': self.current_price,
            'unrealized_pnl': self.unrealized_pnl,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        return cls(
            id=str(data['id']),
            pair=str(data['pair']),
            direction=Direction(data['direction']),
            entry_price=float(data['entry_price']),
            leverage=float(data.get('leverage') or 1.0),
            size=float(data['size']),
            entry_time=parse_timestamp(data.get('entry_time')),
            current_price=float(data['current_price']),
            unrealized_pnl=float(data.get('unrealized_pnl') or 0.0),
        )


@dataclass(frozen=True)
class AccountProfile:
    """Account risk profile.  Immutable; updates replace the whole snapshot."""
    futures_balance: float = 1000.0
    risk_percent: float = 1.0
    session_status: SessionStatus = SessionStatus.UNSET

    def to_dict(self) -> Dict[str, Any]:
        return {
            'futures_balance': self.futures_balance,
            'risk_percent': self.risk_percent,
            'session_status': self.session_status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccountProfile":
        return cls(
            futures_balance=float(data.get('futures_balance') or 0.0),
            risk_percent=float(data.get('risk_percent') or 1.0),
            session_status=SessionStatus(data.get('session_status', SessionStatus.UNSET.value)),
        )


@dataclass(frozen=True)
class AuditEntry:
    """Immutable record of an engine decision."""
    id: str
    timestamp: pd.Timestamp
    category: AuditCategory
    message: str
    details: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'timestamp': _ts(self.timestamp),
            'category': self.category.value,
            'message': self.message,
            'details': self.details,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEntry":
        return cls(
            id=str(data['id']),
            timestamp=parse_timestamp(data.get('timestamp')),
            category=AuditCategory(data['category']),
            message=str(data.get('message', "")),
            details=data.get('details'),
        )
