"""Autonomy-band evaluator.

Pure and synchronous. Bands are examined in ascending level order and the
first band whose constraints all hold wins; if none holds the request
escalates at level 0. A matched AL0 band escalates too. Thresholds are
inclusive.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from .errors import bad_request
from .policy import MAX_PREFIX, Authority, AutonomyBand, is_number, parse_constraint_key


@dataclass(frozen=True)
class ActionRequest:
    action: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EvaluationResult:
    approved: bool
    autonomy_level: int
    reason: str
    matched_band: Optional[AutonomyBand] = None
    escalation_target: Optional[str] = None

    def to_output(self) -> Dict[str, Any]:
        """Structured output as stored on the decision and fed into its hash."""
        out: Dict[str, Any] = {
            "approved": self.approved,
            "autonomy_level": self.autonomy_level,
            "reason": self.reason,
        }
        if self.matched_band is not None:
            out["matched_band"] = self.matched_band.to_dict()
        if self.escalation_target is not None:
            out["escalation_target"] = self.escalation_target
        return out


def _band_satisfied(band: AutonomyBand, data: Mapping[str, Any]) -> bool:
    # Every field is validated before any comparison short-circuits.
    checks = []
    for key, threshold in band.constraints.items():
        prefix, name = parse_constraint_key(key)
        if name not in data:
            raise bad_request(f"Missing required field: {name}", field=name, band=band.level)
        value = data[name]
        if not is_number(value):
            raise bad_request(f"Field {name} must be numeric", field=name, got=type(value).__name__)
        checks.append(value <= threshold if prefix == MAX_PREFIX else value >= threshold)
    return all(checks)


def evaluate(request: ActionRequest, authority: Authority) -> EvaluationResult:
    if request.action != authority.action:
        raise bad_request(
            f"Action mismatch: expected {authority.action}, got {request.action}",
            expected=authority.action,
            got=request.action,
        )
    if not authority.autonomy_bands:
        raise bad_request(f"Authority for {authority.action} has no autonomy bands defined", action=authority.action)

    target = authority.escalation_target
    for band in sorted(authority.autonomy_bands, key=lambda b: b.level):
        if _band_satisfied(band, request.data):
            if band.level == 0:
                return EvaluationResult(
                    approved=False,
                    autonomy_level=0,
                    reason=f"Escalating to {target}: request falls in the AL0 band",
                    matched_band=band,
                    escalation_target=target,
                )
            return EvaluationResult(
                approved=True,
                autonomy_level=band.level,
                reason=f"Approved under AL{band.level} constraints",
                matched_band=band,
            )

    return EvaluationResult(
        approved=False,
        autonomy_level=0,
        reason=f"Escalating to {target}: request is outside all autonomy bands",
        escalation_target=target,
    )
