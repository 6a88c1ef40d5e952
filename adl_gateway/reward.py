"""Outcome -> reward mapping.

Escalated decisions (autonomy level 0) are excluded from learning and yield
no reward. Otherwise the outcome must report success and its metrics must
satisfy every constraint the decision matched. The score is binary for now.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from .policy import MAX_PREFIX, is_number, parse_constraint_key
from .records import Decision

REASON_MISSING_SUCCESS = "missing/invalid success metric"
REASON_UNSUCCESSFUL = "outcome unsuccessful"
REASON_OK = "successful and constraints satisfied"


@dataclass(frozen=True)
class RewardResult:
    success: bool
    reason: str
    score: float

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "reason": self.reason, "score": self.score}


def success_flag(metrics: Mapping[str, Any]) -> Optional[bool]:
    """`success`, else legacy `won`; only real booleans count."""
    for key in ("success", "won"):
        value = metrics.get(key)
        if isinstance(value, bool):
            return value
    return None


def validate_constraints(metrics: Mapping[str, Any], constraints: Mapping[str, Any]) -> List[str]:
    """Return one message per violated constraint, in key order."""
    violations: List[str] = []
    for key in sorted(constraints):
        threshold = constraints[key]
        prefix, name = parse_constraint_key(key)
        value = metrics.get(name)
        if not is_number(value):
            violations.append(f"{name} missing or not numeric")
        elif prefix == MAX_PREFIX and value > threshold:
            violations.append(f"{name} {value} > {threshold}")
        elif prefix != MAX_PREFIX and value < threshold:
            violations.append(f"{name} {value} < {threshold}")
    return violations


def compute_reward(
    decision: Decision,
    metrics: Mapping[str, Any],
    matched_constraints: Optional[Mapping[str, Any]] = None,
) -> Optional[RewardResult]:
    if decision.autonomy_level == 0:
        return None
    constraints = decision.matched_constraints if matched_constraints is None else matched_constraints

    flag = success_flag(metrics)
    if flag is None:
        return RewardResult(False, REASON_MISSING_SUCCESS, 0.0)
    if not flag:
        return RewardResult(False, REASON_UNSUCCESSFUL, 0.0)

    violations = validate_constraints(metrics, constraints)
    if violations:
        return RewardResult(False, "Constraint violations: " + ", ".join(violations), 0.0)
    return RewardResult(True, REASON_OK, 1.0)
