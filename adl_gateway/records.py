"""Persisted record types: decisions, outcomes, variant statistics, events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def iso_ts(dt: datetime) -> str:
    """Fixed-width UTC timestamp so lexical order equals time order."""
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


@dataclass(frozen=True)
class Decision:
    decision_id: str
    ts: str
    node: str
    action: str
    policy_version: str
    inputs: Dict[str, Any]
    output: Dict[str, Any]
    autonomy_level: int
    hash: str
    prev_hash: Optional[str]
    correlation_id: str
    latency_ms: float = 0.0

    @property
    def approved(self) -> bool:
        return bool(self.output.get("approved"))

    @property
    def matched_constraints(self) -> Dict[str, Any]:
        band = self.output.get("matched_band") or {}
        return dict(band.get("constraints") or {})

    def to_response(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "id": self.decision_id,
            "approved": self.approved,
            "autonomy_level": self.autonomy_level,
            "reason": self.output.get("reason", ""),
            "hash": self.hash,
            "prev_hash": self.prev_hash,
            "policy_version": self.policy_version,
            "latency_ms": self.latency_ms,
            "correlation_id": self.correlation_id,
            "ts": self.ts,
        }
        if self.output.get("escalation_target"):
            d["escalation_target"] = self.output["escalation_target"]
        return d


@dataclass(frozen=True)
class Outcome:
    decision_id: str
    metrics: Dict[str, Any]
    recorded_at: str
    correlation_id: Optional[str] = None
    # Reward currently counted in the variant stats; None when nothing was counted.
    applied_success: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision_id": self.decision_id,
            "metrics": dict(self.metrics),
            "recorded_at": self.recorded_at,
            "correlation_id": self.correlation_id,
        }


@dataclass(frozen=True)
class VariantStats:
    """Beta(alpha, beta) shape parameters for one policy variant."""

    variant: str
    alpha: int = 1
    beta: int = 1
    updated_at: Optional[str] = None

    def __post_init__(self) -> None:
        if self.alpha < 1 or self.beta < 1:
            raise ValueError(f"variant {self.variant!r}: alpha and beta must be positive")

    @property
    def mean(self) -> float:
        return self.alpha / float(self.alpha + self.beta)

    def to_dict(self) -> Dict[str, Any]:
        return {"variant": self.variant, "alpha": self.alpha, "beta": self.beta, "updated_at": self.updated_at}


@dataclass(frozen=True)
class Event:
    event_id: int
    type: str
    actor: str
    payload: Dict[str, Any] = field(default_factory=dict)
    correlation_id: Optional[str] = None
    ts: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.event_id,
            "type": self.type,
            "actor": self.actor,
            "payload": dict(self.payload),
            "correlation_id": self.correlation_id,
            "ts": self.ts,
        }
