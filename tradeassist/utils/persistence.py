"""
State persistence utilities.

Trading sessions need to remember their state across restarts: the
signals seen so far, open positions, the audit trail and the account
profile.  This module provides a JSON-based store for that purpose.

A state file that is missing, unreadable or not valid JSON is treated
as an empty store: the session starts from defaults and a warning is
logged, it never fails to start because of a damaged file.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)

SECTIONS = ('signals', 'positions', 'logs', 'credentials', 'settings')


def empty_state() -> Dict[str, Any]:
    """Return the state layout of a brand new session."""
    return {
        'signals': [],
        'positions': [],
        'logs': [],
        'credentials': {},
        'settings': {},
    }


def load_state(path: str) -> Optional[Dict[str, Any]]:
    """Load a JSON state file.

    Parameters
    ----------
    path : str
        Path to the JSON file.

    Returns
    -------
    dict or None
        The state dictionary if the file exists, otherwise `None`.

    Raises
    ------
    ValueError
        If the file exists but does not contain valid JSON.
    """
    file_path = Path(path)
    if not file_path.exists():
        return None
    with file_path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def save_state(path: str, state: Dict[str, Any]) -> None:
    """Write a JSON state file to disk.

    The file is written next to its final location and then moved into
    place, so a crash mid-write leaves the previous state intact.

    Parameters
    ----------
    path : str
        Path to the output file.
    state : dict
        Arbitrary state dictionary.  Must be serialisable to JSON.
    """
    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = file_path.with_suffix(file_path.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as fh:
        json.dump(state, fh, ensure_ascii=False, indent=2, sort_keys=True)
    os.replace(tmp_path, file_path)


class JsonStateStore:
    """Crash-tolerant load/save of the whole session state."""

    def __init__(self, path: str) -> None:
        self.path = path

    def load_all(self) -> Dict[str, Any]:
        """Return every persisted section, falling back to empty defaults."""
        state = empty_state()
        try:
            raw = load_state(self.path)
        except (OSError, ValueError) as exc:
            logger.warning("State file %s is unreadable (%s); starting from an empty state", self.path, exc)
            return state
        if raw is None:
            return state
        if not isinstance(raw, dict):
            logger.warning("State file %s has an unexpected layout; starting from an empty state", self.path)
            return state
        for section in SECTIONS:
            value = raw.get(section)
            if isinstance(value, type(state[section])):
                state[section] = value
        return state

    def save(self, state: Dict[str, Any]) -> None:
        save_state(self.path, state)
