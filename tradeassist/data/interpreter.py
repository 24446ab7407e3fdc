"""
Alert interpreter.

Turns the raw text of a trading alert into a typed `Signal` candidate,
or `None` when no usable signal can be extracted.  Two backends share
the same validation step:

- a *model* callable (for example a language-model client) that
  returns JSON text.  Model output is often slightly malformed, so it
  is repaired before decoding: code fences are stripped, trailing
  commas removed and thousand separators dropped from numbers.
- a rule-based parser for the usual channel formats, used when no
  model is configured::

      BTC/USDT LONG ENTRY 64800 SL 63200 TP 67000 x5
      #ETH/USDT (Short, x10) Entry - 3,520 - 3,540 TP1 - 3,400 SL - 3,600
      UPDATE: Move SL on ETH/USDT to 3450.
      CLOSE SOL/USDT NOW @ MARKET.

Whatever the backend produces goes through `coerce_signal()`, which
either returns a fully typed candidate or `None`.  Partially-typed data
never leaves this module.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from typing import Any, Callable, Dict, List, Optional

from ..core.models import Direction, Signal, SignalKind, SignalStatus
from .price_feed import normalize_pair


logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*|\s*```\s*$", re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_THOUSANDS_VALUE_RE = re.compile(r"(:\s*)(-?\d{1,3}(?:,\d{3})+(?:\.\d+)?)(?=\s*[,}\]])")

_NUMBER = r"\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:\.\d+)?"
_PAIR_RE = re.compile(r"#?\b([A-Z0-9]{2,15}?)[/\-]?(USDT|USDC|BUSD|USD)\b", re.IGNORECASE)
_DIRECTION_RE = re.compile(r"\b(long|short|buy|sell)\b", re.IGNORECASE)
_ENTRY_RE = re.compile(
    rf"\b(?:entry|entries|enter|buy zone|entry zone)\b[\s:@\-]*({_NUMBER})(?:\s*(?:-|to|~|/)\s*({_NUMBER}))?",
    re.IGNORECASE,
)
_STOP_RE = re.compile(
    rf"\b(?:sl|stop[\s\-]?loss|stop)\b(?:\s+on\s+\S+)?[\s:@\-]*(?:to\s+)?({_NUMBER})", re.IGNORECASE
)
_TP_RE = re.compile(rf"\b(?:tp\d*|take[\s\-]?profit\d*|target\d*)\b[\s:@\-]*({_NUMBER})", re.IGNORECASE)
_LEVERAGE_RE = re.compile(r"(?:\bx\s*(\d{1,3})\b|\b(\d{1,3})\s*x\b|leverage[\s:]*(\d{1,3}))", re.IGNORECASE)
_UPDATE_RE = re.compile(r"\b(update|move sl|move stop|adjust|modify)\b", re.IGNORECASE)
_CLOSE_RE = re.compile(r"\b(close|exit|closing)\b", re.IGNORECASE)

DIRECTION_WORDS = {
    'long': Direction.LONG,
    'buy': Direction.LONG,
    'short': Direction.SHORT,
    'sell': Direction.SHORT,
}


def repair_json(raw: str) -> Optional[Dict[str, Any]]:
    """Decode JSON produced by a model, repairing common defects.

    Returns the decoded object, or `None` if it is not a JSON object
    even after repair.
    """
    if not raw:
        return None
    text = _FENCE_RE.sub("", raw.strip())
    try:
        decoded = json.loads(text)
    except ValueError:
        text = _TRAILING_COMMA_RE.sub(r"\1", text)
        text = _THOUSANDS_VALUE_RE.sub(lambda m: m.group(1) + m.group(2).replace(",", ""), text)
        try:
            decoded = json.loads(text)
        except ValueError:
            logger.warning("Interpreter output is not valid JSON: %.120s", raw)
            return None
    return decoded if isinstance(decoded, dict) else None


def to_number(value: Any) -> Optional[float]:
    """Coerce a number or numeric string (``"64,800"``) into a float."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        cleaned = value.replace(",", "").replace("$", "").strip()
        try:
            return float(cleaned)
        except ValueError:
            return None
    return None


def _number_list(value: Any) -> Optional[List[float]]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        value = [value]
    numbers = [to_number(v) for v in value]
    if any(n is None for n in numbers):
        return None
    return numbers


def coerce_signal(payload: Dict[str, Any], raw_text: str = "", source: str = "") -> Optional[Signal]:
    """Validate an untyped payload into a QUEUED `Signal` candidate.

    Accepts both snake_case keys and the camelCase keys used by model
    schemas (``entryPrices``, ``stopLoss``, ``takeProfit``).  NEW
    signals need a pair, a direction, at least one entry, a stop loss
    beyond every entry and at least one take profit; UPDATE and CLOSE
    messages only need a pair.  Anything else yields `None`.
    """
    if not isinstance(payload, dict):
        return None

    def pick(*keys: str) -> Any:
        for key in keys:
            if key in payload and payload[key] is not None:
                return payload[key]
        return None

    pair = normalize_pair(str(pick('pair', 'symbol') or ""))
    if not pair:
        return None

    kind_raw = str(pick('kind', 'type') or SignalKind.NEW.value).upper()
    if kind_raw not in SignalKind.__members__:
        return None
    kind = SignalKind(kind_raw)

    direction_raw = pick('direction', 'side')
    direction = DIRECTION_WORDS.get(str(direction_raw).lower()) if direction_raw is not None else None
    if direction_raw is not None and direction is None:
        return None

    entries = _number_list(pick('entry_prices', 'entryPrices', 'entry'))
    take_profits = _number_list(pick('take_profits', 'takeProfit', 'takeProfits', 'tp'))
    stop_raw = pick('stop_loss', 'stopLoss', 'sl')
    stop = to_number(stop_raw) if stop_raw is not None else 0.0
    leverage_raw = pick('leverage')
    leverage = to_number(leverage_raw) if leverage_raw is not None else 1.0
    if entries is None or take_profits is None or stop is None or leverage is None:
        return None

    if kind is SignalKind.NEW:
        if direction is None or not entries or stop <= 0 or not take_profits:
            return None
        if any(p <= 0 for p in entries + take_profits):
            return None
        # A stop on the wrong side of an entry usually means a thousands
        # separator split a price inside an array, e.g. [64,800].
        if direction is Direction.LONG and stop >= min(entries):
            return None
        if direction is Direction.SHORT and stop <= max(entries):
            return None

    return Signal(
        id=str(pick('id') or uuid.uuid4().hex[:12]),
        pair=pair,
        kind=kind,
        direction=direction,
        entry_prices=entries,
        stop_loss=stop,
        take_profits=take_profits,
        leverage=leverage if leverage > 0 else 1.0,
        status=SignalStatus.QUEUED,
        parent_id=pick('parent_id', 'parentId'),
        source=source,
        raw_text=raw_text,
        notes=str(pick('notes') or ""),
    )


def parse_alert_text(text: str) -> Optional[Dict[str, Any]]:
    """Extract a signal payload from alert text with regular expressions.

    Returns a dictionary suitable for `coerce_signal()` or `None` when
    no pair is mentioned.
    """
    flat = " ".join(text.split())
    pair_match = _PAIR_RE.search(flat)
    if not pair_match:
        return None
    payload: Dict[str, Any] = {'pair': pair_match.group(1) + pair_match.group(2)}

    if _UPDATE_RE.search(flat):
        payload['kind'] = SignalKind.UPDATE.value
    elif _CLOSE_RE.search(flat) and not _ENTRY_RE.search(flat):
        payload['kind'] = SignalKind.CLOSE.value
    else:
        payload['kind'] = SignalKind.NEW.value

    direction = _DIRECTION_RE.search(flat)
    if direction:
        payload['direction'] = direction.group(1).lower()

    entry = _ENTRY_RE.search(flat)
    if entry:
        payload['entry_prices'] = [v for v in entry.groups() if v]
    stop = _STOP_RE.search(flat)
    if stop:
        payload['stop_loss'] = stop.group(1)
    payload['take_profits'] = _TP_RE.findall(flat)
    leverage = _LEVERAGE_RE.search(flat)
    if leverage:
        payload['leverage'] = next(v for v in leverage.groups() if v)
    return payload


class SignalInterpreter:
    """Interpret raw alert text into a `Signal` candidate.

    Parameters
    ----------
    model : callable, optional
        ``model(text) -> str`` returning JSON.  When omitted the
        rule-based parser is used.
    max_input_chars : int
        Input is truncated to this length before interpretation.
    """

    def __init__(self, model: Optional[Callable[[str], str]] = None, max_input_chars: int = 2000) -> None:
        self.model = model
        self.max_input_chars = max_input_chars

    def interpret(self, raw_text: str, source: str = "Manual Ingestion") -> Optional[Signal]:
        if not raw_text or not raw_text.strip():
            return None
        text = raw_text[: self.max_input_chars]
        if self.model is not None:
            try:
                output = self.model(text)
            except Exception as exc:
                logger.error("Signal model call failed: %s", exc)
                return None
            payload = repair_json(output)
        else:
            payload = parse_alert_text(text)
        if payload is None:
            logger.info("No structured signal found in: %.80s", text)
            return None
        signal = coerce_signal(payload, raw_text=text, source=source)
        if signal is None:
            logger.info("Discarded incomplete signal payload: %s", payload)
        return signal
