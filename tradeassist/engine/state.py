"""
Application state and audit trail.

`AppState` is the single owner of every signal, position, audit entry
and the account profile of a trading session.  The coordinator creates
one instance and hands it to the lifecycle engine and the market
monitor; nothing else keeps its own copy of the records.

Readers get copies.  Writers go through `commit()`, which applies the
record changes, appends the audit entries they produced and persists
the result while holding one lock.  That makes the audit trail follow
the exact order in which transitions were applied, and a reader never
observes a half-applied transition.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from dataclasses import replace
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple
import pandas as pd

from ..core.models import (
    AccountProfile,
    AuditCategory,
    AuditEntry,
    ExecutionMode,
    Position,
    Signal,
    SignalStatus,
)
from ..utils.persistence import JsonStateStore
from ..utils.timeutils import utc_now


logger = logging.getLogger(__name__)

Event = Tuple[AuditCategory, str, Optional[str]]


class AuditLog:
    """Append-only audit trail holding at most `max_entries` records.

    Entries are kept newest first; once the capacity is reached the
    oldest entry is evicted.
    """

    def __init__(self, max_entries: int = 100) -> None:
        self.max_entries = max_entries
        self._entries: Deque[AuditEntry] = deque(maxlen=max_entries)

    def append(self, entry: AuditEntry) -> AuditEntry:
        self._entries.appendleft(entry)
        return entry

    def entries(self, category: Optional[AuditCategory] = None) -> List[AuditEntry]:
        """Return entries newest first, optionally filtered by category."""
        if category is None:
            return list(self._entries)
        return [e for e in self._entries if e.category is category]

    def __len__(self) -> int:
        return len(self._entries)


class AppState:
    """Signals, positions, audit trail and account of one session."""

    def __init__(
        self,
        account: Optional[AccountProfile] = None,
        execution_mode: ExecutionMode = ExecutionMode.ASSISTED,
        store: Optional[JsonStateStore] = None,
        max_log_entries: int = 100,
        clock: Callable[[], pd.Timestamp] = utc_now,
    ) -> None:
        self._lock = threading.RLock()
        self._signals: Dict[str, Signal] = {}
        self._positions: Dict[str, Position] = {}
        self._account = account or AccountProfile()
        self._execution_mode = execution_mode
        self.audit = AuditLog(max_log_entries)
        self.store = store
        self.clock = clock

    # ------------------------------------------------------------------
    @classmethod
    def load(
        cls,
        store: JsonStateStore,
        default_account: Optional[AccountProfile] = None,
        default_mode: ExecutionMode = ExecutionMode.ASSISTED,
        max_log_entries: int = 100,
        clock: Callable[[], pd.Timestamp] = utc_now,
    ) -> "AppState":
        """Rebuild a session from `store`.

        Records that cannot be decoded are dropped with a warning; the
        remaining records load normally.
        """
        raw = store.load_all()
        account = default_account
        if raw['credentials']:
            try:
                account = AccountProfile.from_dict(raw['credentials'])
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Discarding stored credentials: %s", exc)
        mode = default_mode
        stored_mode = raw['settings'].get('execution_mode')
        if stored_mode in ExecutionMode.__members__:
            mode = ExecutionMode(stored_mode)

        state = cls(account=account, execution_mode=mode, store=store,
                    max_log_entries=max_log_entries, clock=clock)
        for item in raw['signals']:
            try:
                signal = Signal.from_dict(item)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Discarding unreadable signal record: %s", exc)
                continue
            state._signals[signal.id] = signal
        for item in raw['positions']:
            try:
                position = Position.from_dict(item)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Discarding unreadable position record: %s", exc)
                continue
            state._positions[position.id] = position
        # Stored newest first; append oldest first to keep that order.
        for item in reversed(raw['logs']):
            try:
                state.audit.append(AuditEntry.from_dict(item))
            except (KeyError, TypeError, ValueError):
                continue
        logger.info(
            "Loaded %d signals, %d positions and %d audit entries",
            len(state._signals), len(state._positions), len(state.audit),
        )
        return state

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'signals': [s.to_dict() for s in self._sorted_signals()],
                'positions': [p.to_dict() for p in self._positions.values()],
                'logs': [e.to_dict() for e in self.audit.entries()],
                'credentials': self._account.to_dict(),
                'settings': {'execution_mode': self._execution_mode.value},
            }

    # ------------------------------------------------------------------
    # Queries
    @property
    def account(self) -> AccountProfile:
        return self._account

    @property
    def execution_mode(self) -> ExecutionMode:
        return self._execution_mode

    def get_signal(self, signal_id: str) -> Optional[Signal]:
        with self._lock:
            signal = self._signals.get(signal_id)
            return replace(signal, entry_prices=list(signal.entry_prices),
                           take_profits=list(signal.take_profits)) if signal else None

    def get_position(self, position_id: str) -> Optional[Position]:
        with self._lock:
            position = self._positions.get(position_id)
            return replace(position) if position else None

    def list_signals(self, *statuses: SignalStatus) -> List[Signal]:
        """Return signal copies newest first, optionally filtered by status."""
        with self._lock:
            return [
                self.get_signal(s.id) for s in self._sorted_signals()
                if not statuses or s.status in statuses
            ]

    def list_positions(self) -> List[Position]:
        with self._lock:
            return [replace(p) for p in self._positions.values()]

    def logs(self, category: Optional[AuditCategory] = None) -> List[AuditEntry]:
        with self._lock:
            return self.audit.entries(category)

    def _sorted_signals(self) -> List[Signal]:
        return sorted(
            self._signals.values(),
            key=lambda s: s.created_at if s.created_at is not None else pd.Timestamp.min.tz_localize("UTC"),
            reverse=True,
        )

    # ------------------------------------------------------------------
    # Mutation
    def commit(
        self,
        signals: Iterable[Signal] = (),
        positions: Iterable[Position] = (),
        retired: Iterable[str] = (),
        events: Iterable[Event] = (),
        account: Optional[AccountProfile] = None,
        execution_mode: Optional[ExecutionMode] = None,
    ) -> List[AuditEntry]:
        """Apply record changes, append their audit entries and persist.

        Parameters
        ----------
        signals, positions : iterable
            Records to insert or replace, keyed by id.
        retired : iterable of str
            Ids of positions to remove.
        events : iterable of (category, message, details)
            Audit entries produced by this change, in order.
        account : AccountProfile, optional
            Replacement account snapshot.
        execution_mode : ExecutionMode, optional
            Replacement session execution mode.

        Returns
        -------
        list of AuditEntry
            The entries appended by this commit.
        """
        with self._lock:
            for signal in signals:
                self._signals[signal.id] = signal
            for position in positions:
                self._positions[position.id] = position
            for position_id in retired:
                self._positions.pop(position_id, None)
            if account is not None:
                self._account = account
            if execution_mode is not None:
                self._execution_mode = execution_mode
            appended = [
                self.audit.append(AuditEntry(
                    id=uuid.uuid4().hex[:12],
                    timestamp=self.clock(),
                    category=category,
                    message=message,
                    details=details,
                ))
                for category, message, details in events
            ]
            self._persist()
            return appended

    def _persist(self) -> None:
        if self.store is None:
            return
        try:
            self.store.save(self.to_dict())
        except (OSError, ValueError) as exc:
            logger.error("Failed to persist session state to %s: %s", self.store.path, exc)
