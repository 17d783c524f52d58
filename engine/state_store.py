from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict


@dataclass
class EngineState:
    balance: int = 0
    positions: Dict[str, int] = field(default_factory=dict)


def _validated(data: Dict[str, Any]) -> Dict[str, Any]:
    """Check the document shape; anything off raises so the file is treated as corrupt."""
    balance = data.get("balance", 0)
    if not isinstance(balance, int) or isinstance(balance, bool):
        raise ValueError(f"balance is not an integer: {balance!r}")
    positions = data.get("positions", {})
    if not isinstance(positions, dict):
        raise ValueError("positions is not an object")
    for venue, held in positions.items():
        if not isinstance(held, dict):
            raise ValueError(f"positions for {venue} is not an object")
        for symbol, qty in held.items():
            if not isinstance(qty, int) or isinstance(qty, bool):
                raise ValueError(f"position {venue}/{symbol} is not an integer: {qty!r}")
    return data

class EngineStateStore:
    """
    Small JSON file carrying the balance and positions between runs.

    Layout: ``{"balance": 0, "venue": "TESTEX", "positions": {"TESTEX": {"FOOBAR": 10}}}``.
    The balance only belongs to the venue it was earned on; positions are
    kept per venue. This is a convenience, not a durability guarantee.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.logger = logging.getLogger("state_store")

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError("state root is not an object")
            return _validated(data)
        except (OSError, ValueError, TypeError, AttributeError) as exc:
            backup = self.path.with_name(self.path.name + ".corrupt")
            self.logger.error("state_file_corrupt path=%s backup=%s error=%s", self.path, backup, exc)
            try:
                os.replace(self.path, backup)
            except OSError:
                self.logger.exception("state_file_backup_failed path=%s", self.path)
            return {}

    def load(self, venue: str) -> EngineState:
        data = self._read()
        positions = dict(data.get("positions", {}).get(venue, {}))
        balance = 0
        if data.get("venue") == venue:
            balance = data.get("balance", 0)
        elif data:
            self.logger.info("state_venue_changed previous=%s current=%s balance_reset=True", data.get("venue"), venue)
        return EngineState(balance=balance, positions=positions)

    def save(self, venue: str, state: EngineState) -> None:
        data = self._read()
        all_positions = dict(data.get("positions", {}))
        all_positions[venue] = {s: q for s, q in state.positions.items() if q != 0}
        payload = {"balance": state.balance, "venue": venue, "positions": all_positions}

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp, self.path)
        self.logger.info("state_saved path=%s venue=%s balance=%s", self.path, venue, state.balance)
