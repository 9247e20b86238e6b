"""
Usage Ledger — daily count of successful generations.

Stored as a small JSON file next to the projects:
    {"date": "2026-10-18", "count": 12}

The count resets whenever the stored date is not today. Only the scheduler
increments it (once per successful page); the operator can reset it.
"""

import json
import threading
from datetime import date
from pathlib import Path


def _today():
    return date.today().isoformat()


class UsageLedger:
    def __init__(self, date=None, count=0, today=None):
        self._today = today or _today
        self._lock = threading.Lock()
        self.date = date or self._today()
        self.count = int(count)
        self.roll_over()

    def roll_over(self):
        """Zero the counter if the day changed. True when it did."""
        with self._lock:
            return self._roll_over_locked()

    def _roll_over_locked(self):
        today = self._today()
        if self.date == today:
            return False
        print(f"[usage_ledger] New day {today}: resetting usage (was {self.count} on {self.date})")
        self.date = today
        self.count = 0
        return True

    def increment(self):
        with self._lock:
            self._roll_over_locked()
            self.count += 1
            return self.count

    def reset(self):
        with self._lock:
            self.date = self._today()
            self.count = 0

    def current(self):
        with self._lock:
            self._roll_over_locked()
            return self.count

    def exceeds(self, ceiling):
        """True once today's usage has reached the ceiling."""
        return self.current() >= ceiling

    def to_dict(self):
        with self._lock:
            return {"date": self.date, "count": self.count}

    @classmethod
    def from_dict(cls, data, today=None):
        data = data or {}
        return cls(date=data.get("date"), count=data.get("count") or 0, today=today)


def load_usage(path, today=None):
    """Load the ledger from disk; a missing or corrupt file starts at zero."""
    path = Path(path)
    if not path.exists():
        return UsageLedger(today=today)
    try:
        with open(path) as f:
            data = json.load(f)
    except (json.JSONDecodeError, IOError) as e:
        print(f"[usage_ledger] Could not read {path}: {e}. Starting from zero.")
        return UsageLedger(today=today)
    return UsageLedger.from_dict(data, today=today)


def save_usage(ledger, path):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(ledger.to_dict(), f, indent=2)
