"""
Signal lifecycle engine.

The engine is the only component allowed to create signals and
positions or to change a signal's status.  Every action follows the
same shape: take the per-signal lock, read the current record, check
the transition table and the guards, then hand the new records and
their audit entries to `AppState.commit()` in one step.

Guard failures are ordinary outcomes.  They produce an ERROR audit
entry and a rejected `ActionResult`; the record stays as it was and
the action may be retried later.  Acting on an unknown id is a no-op
that returns a NOT_FOUND result.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional

from ..core.models import (
    AccountProfile,
    AuditCategory,
    Direction,
    EntryMode,
    ExecutionMode,
    Position,
    SessionStatus,
    Signal,
    SignalKind,
    SignalStatus,
)
from ..risk.calculator import RiskAssessment, calculate_risk, unrealized_pnl
from ..utils.timeutils import to_timezone
from .state import AppState


logger = logging.getLogger(__name__)

S = SignalStatus

# Legal edges.  Anything not listed here is rejected.
TRANSITIONS: Dict[SignalStatus, FrozenSet[SignalStatus]] = {
    S.RECEIVED: frozenset({S.PARSED, S.CANCELLED, S.FAILED}),
    S.PARSED: frozenset({S.QUEUED, S.CANCELLED, S.FAILED}),
    S.QUEUED: frozenset({S.PENDING_CONFIRMATION, S.WAITING_FOR_ENTRY, S.EXECUTING, S.CANCELLED, S.FAILED}),
    S.PENDING_CONFIRMATION: frozenset({S.WAITING_FOR_ENTRY, S.EXECUTING, S.CANCELLED, S.FAILED}),
    # WAITING_FOR_ENTRY -> CLOSED is only taken by the kill switch.
    S.WAITING_FOR_ENTRY: frozenset({S.EXECUTING, S.EXECUTED, S.CANCELLED, S.FAILED, S.CLOSED}),
    S.EXECUTING: frozenset({S.EXECUTED, S.CANCELLED, S.FAILED}),
    S.EXECUTED: frozenset({S.CLOSED}),
    S.CLOSED: frozenset(),
    S.CANCELLED: frozenset(),
    S.FAILED: frozenset(),
}


def can_transition(current: SignalStatus, target: SignalStatus) -> bool:
    return target in TRANSITIONS[current]


class Outcome(str, Enum):
    APPLIED = "APPLIED"
    REJECTED = "REJECTED"
    NOT_FOUND = "NOT_FOUND"


@dataclass(frozen=True)
class ActionResult:
    """What an engine action did.

    Attributes
    ----------
    outcome : Outcome
        APPLIED, REJECTED or NOT_FOUND.
    signal_id : str or None
        Target of the action.
    reason : str
        Human-readable rejection reason; empty when applied.
    signal : Signal or None
        Copy of the record after the action.
    """
    outcome: Outcome
    signal_id: Optional[str] = None
    reason: str = ""
    signal: Optional[Signal] = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.APPLIED


BLOCKED_INVALID_SESSION = "blocked: invalid session"
SIZE_TOO_LARGE = "execution aborted: size too large"


class LifecycleEngine:
    """Apply user actions and monitor events to the session state.

    Parameters
    ----------
    state : AppState
        Shared session state.
    max_size_multiple : float
        Execution is refused once the size reaches this multiple of the
        balance.
    calculator : callable
        Risk calculator, `calculate_risk` unless a test swaps it.
    """

    def __init__(
        self,
        state: AppState,
        max_size_multiple: float = 20.0,
        calculator: Callable[[Signal, AccountProfile], RiskAssessment] = calculate_risk,
    ) -> None:
        self.state = state
        self.max_size_multiple = max_size_multiple
        self.calculator = calculator
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, signal_id: str, create: bool = False) -> Optional[threading.RLock]:
        """Return the lock serialising actions on one signal.

        Returns None for an unknown id unless ``create`` is set.  Only
        live signals keep a lock in the map; a terminal signal can no
        longer change and gets a throwaway one.
        """
        with self._locks_guard:
            lock = self._locks.get(signal_id)
            if lock is not None:
                return lock
            signal = self.state.get_signal(signal_id)
            if signal is None and not create:
                return None
            if signal is not None and signal.status.is_terminal:
                return threading.RLock()
            lock = self._locks[signal_id] = threading.RLock()
            return lock

    def _release_lock(self, signal_id: str) -> None:
        # Called with the signal's lock held, after its terminal commit.
        with self._locks_guard:
            self._locks.pop(signal_id, None)

    # ------------------------------------------------------------------
    # Helpers
    def record(self, category: AuditCategory, message: str, details: Optional[str] = None) -> None:
        """Append an audit entry that is not tied to a state change."""
        self.state.commit(events=[(category, message, details)])

    def _not_found(self, signal_id: str) -> ActionResult:
        logger.warning("No signal with id %s", signal_id)
        return ActionResult(Outcome.NOT_FOUND, signal_id, f"signal {signal_id} not found")

    def _reject(self, signal: Signal, reason: str, message: Optional[str] = None) -> ActionResult:
        logger.info("Rejected action on %s (%s): %s", signal.id, signal.status.value, reason)
        self.state.commit(events=[(AuditCategory.ERROR, message or reason.capitalize(), f"{signal.pair} [{signal.id}]")])
        return ActionResult(Outcome.REJECTED, signal.id, reason, signal)

    def _illegal(self, signal: Signal, target: SignalStatus) -> ActionResult:
        return self._reject(
            signal,
            f"cannot move from {signal.status.value} to {target.value}",
            "Transition rejected",
        )

    def _applied(self, signal: Signal) -> ActionResult:
        return ActionResult(Outcome.APPLIED, signal.id, "", self.state.get_signal(signal.id))

    # ------------------------------------------------------------------
    # Admission
    def admit(self, candidate: Signal) -> ActionResult:
        """Store a structured candidate signal as QUEUED.

        NEW signals get their risk fields computed against the current
        account.  UPDATE and CLOSE messages without a parent id are
        linked to the newest live signal on the same pair.
        """
        signal = replace(
            candidate,
            status=SignalStatus.QUEUED,
            created_at=(
                to_timezone(candidate.created_at, "UTC") if candidate.created_at is not None else self.state.clock()
            ),
            pnl=None,
        )
        if not signal.id:
            signal = replace(signal, id=uuid.uuid4().hex[:12])

        with self._lock_for(signal.id, create=True):
            if self.state.get_signal(signal.id) is not None:
                return self._reject(signal, f"signal {signal.id} already admitted", "Duplicate signal")

            if signal.kind is SignalKind.NEW:
                risk = self.calculator(signal, self.state.account)
                signal = replace(signal, calculated_size=risk.calculated_size, max_risk_amount=risk.max_risk)
            elif signal.parent_id is None:
                parent = self._latest_live_on_pair(signal.pair)
                if parent is not None:
                    signal = replace(signal, parent_id=parent.id)

            details = f"Asset: {signal.pair}"
            if signal.parent_id:
                details += f" (amends {signal.parent_id})"
            self.state.commit(
                signals=[signal],
                events=[(AuditCategory.SIGNAL, f"{signal.kind.value} Detected", details)],
            )
            logger.info("Admitted %s signal %s for %s", signal.kind.value, signal.id, signal.pair)
            return self._applied(signal)

    def _latest_live_on_pair(self, pair: str) -> Optional[Signal]:
        for existing in self.state.list_signals():
            if existing.pair == pair and existing.kind is SignalKind.NEW and not existing.status.is_terminal:
                return existing
        return None

    # ------------------------------------------------------------------
    # User actions
    def request_confirmation(self, signal_id: str) -> ActionResult:
        """Mark a queued signal as presented to the user for approval."""
        lock = self._lock_for(signal_id)
        if lock is None:
            return self._not_found(signal_id)
        with lock:
            signal = self.state.get_signal(signal_id)
            if not can_transition(signal.status, SignalStatus.PENDING_CONFIRMATION):
                return self._illegal(signal, SignalStatus.PENDING_CONFIRMATION)
            signal.status = SignalStatus.PENDING_CONFIRMATION
            self.state.commit(signals=[signal])
            return self._applied(signal)

    def confirm(self, signal_id: str, immediate: bool = False) -> ActionResult:
        """Acknowledge a signal.

        With ``immediate=False`` the signal waits for its entry price and
        the market monitor triggers execution.  With ``immediate=True``
        it is executed right away.
        """
        lock = self._lock_for(signal_id)
        if lock is None:
            return self._not_found(signal_id)
        with lock:
            signal = self.state.get_signal(signal_id)
            if signal.status not in (SignalStatus.QUEUED, SignalStatus.PENDING_CONFIRMATION):
                target = SignalStatus.EXECUTING if immediate else SignalStatus.WAITING_FOR_ENTRY
                return self._illegal(signal, target)
            if signal.kind is not SignalKind.NEW or signal.direction is None or not signal.entry_prices:
                return self._reject(signal, "signal has no tradable entry", "Confirmation rejected")

            if immediate:
                signal.entry_mode = EntryMode.IMMEDIATE
                signal.status = SignalStatus.EXECUTING
                self.state.commit(
                    signals=[signal],
                    events=[(AuditCategory.USER_ACTION, f"Confirmed Signal: {signal.pair}", "Executing immediately.")],
                )
                return self.execute(signal_id)

            signal.entry_mode = EntryMode.CONDITIONAL
            signal.status = SignalStatus.WAITING_FOR_ENTRY
            self.state.commit(
                signals=[signal],
                events=[(AuditCategory.USER_ACTION, f"Confirmed Signal: {signal.pair}", "Monitoring for entry.")],
            )
            return self._applied(signal)

    def cancel(self, signal_id: str) -> ActionResult:
        lock = self._lock_for(signal_id)
        if lock is None:
            return self._not_found(signal_id)
        with lock:
            signal = self.state.get_signal(signal_id)
            if not can_transition(signal.status, SignalStatus.CANCELLED):
                return self._illegal(signal, SignalStatus.CANCELLED)
            signal.status = SignalStatus.CANCELLED
            self.state.commit(
                signals=[signal],
                events=[(AuditCategory.USER_ACTION, f"Cancelled signal: {signal.pair}", None)],
            )
            self._release_lock(signal_id)
            return self._applied(signal)

    def fail(self, signal_id: str, reason: str) -> ActionResult:
        """Retire a pre-execution signal as FAILED, e.g. after an assisted execution error."""
        lock = self._lock_for(signal_id)
        if lock is None:
            return self._not_found(signal_id)
        with lock:
            signal = self.state.get_signal(signal_id)
            if not can_transition(signal.status, SignalStatus.FAILED):
                return self._illegal(signal, SignalStatus.FAILED)
            signal.status = SignalStatus.FAILED
            signal.notes = f"{signal.notes}\n{reason}".strip()
            self.state.commit(
                signals=[signal],
                events=[(AuditCategory.ERROR, f"Signal failed: {signal.pair}", reason)],
            )
            self._release_lock(signal_id)
            return self._applied(signal)

    # ------------------------------------------------------------------
    # Execution
    def execute(self, signal_id: str) -> ActionResult:
        """Open a position for a confirmed signal.

        Guards, in order: the exchange session must be VALID, and the
        recomputed size must stay strictly below
        ``balance * max_size_multiple``.
        """
        lock = self._lock_for(signal_id)
        if lock is None:
            return self._not_found(signal_id)
        with lock:
            signal = self.state.get_signal(signal_id)
            if signal.status not in (SignalStatus.WAITING_FOR_ENTRY, SignalStatus.EXECUTING):
                return self._illegal(signal, SignalStatus.EXECUTED)

            account = self.state.account
            if account.session_status is not SessionStatus.VALID:
                return self._reject(signal, BLOCKED_INVALID_SESSION, "Blocked: Invalid Session")

            risk = self.calculator(signal, account)
            ceiling = account.futures_balance * self.max_size_multiple
            if risk.calculated_size >= ceiling:
                logger.warning(
                    "Size %.2f for %s reaches the safety ceiling %.2f", risk.calculated_size, signal.id, ceiling
                )
                return self._reject(signal, SIZE_TOO_LARGE, "Execution Aborted")

            now = self.state.clock()
            position = Position(
                id=signal.id,
                pair=signal.pair,
                direction=signal.direction or Direction.LONG,
                entry_price=signal.entry_price,
                leverage=signal.leverage,
                size=risk.calculated_size,
                entry_time=now,
                current_price=signal.entry_price,
                unrealized_pnl=0.0,
            )
            signal.status = SignalStatus.EXECUTED
            signal.calculated_size = risk.calculated_size
            signal.max_risk_amount = risk.max_risk
            self.state.commit(
                signals=[signal],
                positions=[position],
                events=[(AuditCategory.TRADE, f"Position Opened: {signal.pair}", f"Risk: ${risk.max_risk:.2f}")],
            )
            logger.info("Opened %s position %s size=%.2f", signal.pair, signal.id, risk.calculated_size)
            return self._applied(signal)

    def mark_position(self, position_id: str, price: float) -> ActionResult:
        """Refresh a position's current price and unrealized PnL."""
        lock = self._lock_for(position_id)
        missing = ActionResult(Outcome.NOT_FOUND, position_id, f"position {position_id} not found")
        if lock is None:
            return missing
        with lock:
            position = self.state.get_position(position_id)
            if position is None:
                return missing
            position.current_price = price
            position.unrealized_pnl = unrealized_pnl(
                position.direction, position.entry_price, price, position.size, position.leverage
            )
            self.state.commit(positions=[position])
            return ActionResult(Outcome.APPLIED, position_id, "", self.state.get_signal(position_id))

    def close_position(self, position_id: str) -> ActionResult:
        """Close a position at its last unrealized PnL snapshot."""
        lock = self._lock_for(position_id)
        if lock is None:
            return self._not_found(position_id)
        with lock:
            signal = self.state.get_signal(position_id)
            position = self.state.get_position(position_id)
            if position is None or not can_transition(signal.status, SignalStatus.CLOSED):
                return self._illegal(signal, SignalStatus.CLOSED)

            pnl = position.unrealized_pnl
            signal.status = SignalStatus.CLOSED
            signal.pnl = pnl
            self.state.commit(
                signals=[signal],
                retired=[position.id],
                events=[(AuditCategory.TRADE, f"Position Closed: {signal.pair}", f"PnL: ${pnl:.2f}")],
            )
            logger.info("Closed %s position %s pnl=%.2f", signal.pair, signal.id, pnl)
            self._release_lock(position_id)
            return self._applied(signal)

    def close_all(self, fallback_pnl: float = 0.0) -> List[ActionResult]:
        """Kill switch: close every open position and waiting signal now.

        Open positions book their last unrealized PnL; signals still
        waiting for entry never had exposure and book `fallback_pnl`.
        A single SYSTEM audit entry records the sweep.
        """
        targets = self.state.list_signals(SignalStatus.EXECUTED, SignalStatus.WAITING_FOR_ENTRY)
        results: List[ActionResult] = []
        closed: List[Signal] = []
        for target in targets:
            with self._lock_for(target.id):
                signal = self.state.get_signal(target.id)
                if signal is None or signal.status not in (SignalStatus.EXECUTED, SignalStatus.WAITING_FOR_ENTRY):
                    continue
                if not can_transition(signal.status, SignalStatus.CLOSED):
                    continue
                position = self.state.get_position(signal.id)
                signal.pnl = position.unrealized_pnl if position is not None else fallback_pnl
                signal.status = SignalStatus.CLOSED
                self.state.commit(signals=[signal], retired=[signal.id])
                self._release_lock(signal.id)
                closed.append(signal)
                results.append(ActionResult(Outcome.APPLIED, signal.id, "", signal))
        self.record(
            AuditCategory.SYSTEM,
            "EMERGENCY KILL SWITCH ACTIVATED",
            f"{len(closed)} pending and active trades closed immediately.",
        )
        logger.warning("Kill switch closed %d signals/positions", len(closed))
        return results

    # ------------------------------------------------------------------
    # Account and session settings
    def update_account(
        self,
        futures_balance: Optional[float] = None,
        risk_percent: Optional[float] = None,
        session_status: Optional[SessionStatus] = None,
    ) -> AccountProfile:
        """Replace the account snapshot with the given changes.

        Raises
        ------
        ValueError
            If the balance is negative or the risk percent is outside
            ``(0, 10]``.
        """
        current = self.state.account
        updated = replace(
            current,
            futures_balance=current.futures_balance if futures_balance is None else float(futures_balance),
            risk_percent=current.risk_percent if risk_percent is None else float(risk_percent),
            session_status=current.session_status if session_status is None else SessionStatus(session_status),
        )
        if updated.futures_balance < 0:
            raise ValueError(f"futures_balance must be >= 0, got {updated.futures_balance}")
        if not 0 < updated.risk_percent <= 10:
            raise ValueError(f"risk_percent must be in (0, 10], got {updated.risk_percent}")
        self.state.commit(
            account=updated,
            events=[(AuditCategory.USER_ACTION, "Account updated",
                     f"balance={updated.futures_balance:.2f} risk={updated.risk_percent}% "
                     f"session={updated.session_status.value}")],
        )
        return updated

    def sync_balance(self, fetch_balance: Callable[[], Optional[float]]) -> bool:
        """Refresh the futures balance from an exchange collaborator.

        Requires a VALID session.  A collaborator that returns nothing
        or raises leaves the balance untouched.
        """
        if self.state.account.session_status is not SessionStatus.VALID:
            self.record(AuditCategory.ERROR, "Sync Failed", "Valid exchange session required to fetch balance.")
            return False
        try:
            balance = fetch_balance()
        except Exception as exc:
            logger.error("Balance sync failed: %s", exc)
            balance = None
        if balance is None or balance < 0:
            self.record(AuditCategory.ERROR, "Sync Failed", "Balance source returned no usable value.")
            return False
        updated = replace(self.state.account, futures_balance=round(float(balance), 2))
        self.state.commit(
            account=updated,
            events=[(AuditCategory.SYSTEM, "Balance Synced", f"Updated Futures Balance: ${updated.futures_balance}")],
        )
        return True

    def set_execution_mode(self, mode: ExecutionMode, reason: str = "") -> ExecutionMode:
        mode = ExecutionMode(mode)
        details = reason or None
        self.state.commit(
            execution_mode=mode,
            events=[(AuditCategory.USER_ACTION, f"Execution mode set to {mode.value}", details)],
        )
        return mode
