"""In-memory operational counters behind `/v1/stats`.

Counters reset on process restart and are not audit evidence; the decision
chain is.
"""

from __future__ import annotations

import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class _Counters:
    decisions_total: int = 0
    escalations_total: int = 0
    outcomes_total: int = 0
    storage_lockdown_total: int = 0
    decisions_by_level: Counter = field(default_factory=Counter)
    decisions_by_node: Counter = field(default_factory=Counter)
    rewards_by_result: Counter = field(default_factory=Counter)  # success / failure / skipped
    errors_by_code: Counter = field(default_factory=Counter)


class OpsStats:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._started = time.monotonic()
        self._c = _Counters()

    def record_decision(self, node: str, autonomy_level: int, approved: bool) -> None:
        with self._lock:
            self._c.decisions_total += 1
            self._c.decisions_by_level[f"AL{autonomy_level}"] += 1
            self._c.decisions_by_node[node or "unknown"] += 1
            if not approved:
                self._c.escalations_total += 1

    def record_outcome(self, reward_result: str) -> None:
        with self._lock:
            self._c.outcomes_total += 1
            self._c.rewards_by_result[reward_result] += 1

    def record_error(self, code: str) -> None:
        with self._lock:
            self._c.errors_by_code[code or "unknown"] += 1

    def record_storage_lockdown(self) -> None:
        with self._lock:
            self._c.storage_lockdown_total += 1

    def reset(self) -> None:
        with self._lock:
            self._started = time.monotonic()
            self._c = _Counters()

    def snapshot(self, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        with self._lock:
            snap: Dict[str, Any] = {"uptime_seconds": int(time.monotonic() - self._started)}
            for name, value in vars(self._c).items():
                snap[name] = dict(value) if isinstance(value, Counter) else value
        snap.update(extra or {})
        return snap


OPS_STATS = OpsStats()
