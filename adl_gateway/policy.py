"""Policy document model.

A policy document maps node names to nodes; a node lists authorities; an
authority binds one action to its autonomy bands and an optional escalation
target. Documents are immutable: publishing a change means publishing a new
(name, version) row.

Constraint keys follow a fixed convention, and only two prefixes exist:

    max_<field>   input[field] <= threshold
    min_<field>   input[field] >= threshold

Any other key is a configuration error and is rejected when the document is
parsed, so evaluation never meets an unknown constraint.

Both the camelCase keys written by earlier producers (``autonomyBands``,
``ifOutside``, ``timeoutHours``) and snake_case keys are accepted on input;
``to_dict`` always emits snake_case.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import bad_request, policy_invalid

AUTONOMY_LEVELS = (0, 1, 2, 3)
DEFAULT_ESCALATION_TARGET = "supervisor"

MIN_PREFIX = "min_"
MAX_PREFIX = "max_"

LATEST_SLOT = "@latest"


def parse_constraint_key(key: str) -> Tuple[str, str]:
    """Split a constraint key into (prefix, field).

    Raises ValueError for keys without a recognised prefix or with an empty
    field name.
    """
    for prefix in (MIN_PREFIX, MAX_PREFIX):
        if key.startswith(prefix):
            name = key[len(prefix):]
            if not name:
                raise ValueError(f"constraint key {key!r} has no field name")
            return prefix, name
    raise ValueError(f"constraint key {key!r} must start with {MIN_PREFIX!r} or {MAX_PREFIX!r}")


def is_number(value: Any) -> bool:
    """True for finite ints/floats. Booleans are not numbers here."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _pick(d: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for k in keys:
        if k in d:
            return d[k]
    return default


@dataclass(frozen=True)
class AutonomyBand:
    level: int
    constraints: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, d: Mapping[str, Any], path: str = "band") -> "AutonomyBand":
        if not isinstance(d, Mapping):
            raise policy_invalid("autonomy band must be an object", path=path)
        level = d.get("level")
        if isinstance(level, bool) or not isinstance(level, int) or level not in AUTONOMY_LEVELS:
            raise policy_invalid("autonomy band level must be an integer in 0..3", path=path, got=level)
        raw = d.get("constraints") or {}
        if not isinstance(raw, Mapping):
            raise policy_invalid("band constraints must be an object", path=path)
        constraints: Dict[str, float] = {}
        for key, threshold in raw.items():
            try:
                parse_constraint_key(str(key))
            except ValueError as e:
                raise policy_invalid(str(e), path=path) from e
            if not is_number(threshold):
                raise policy_invalid(f"threshold for {key!r} must be numeric", path=path)
            constraints[str(key)] = threshold
        return cls(level=level, constraints=constraints)

    def to_dict(self) -> Dict[str, Any]:
        return {"level": self.level, "constraints": dict(self.constraints)}


@dataclass(frozen=True)
class Escalation:
    if_outside: Optional[str] = None
    notify: Tuple[str, ...] = ()
    timeout_hours: Optional[float] = None

    @classmethod
    def from_dict(cls, d: Mapping[str, Any], path: str = "escalation") -> "Escalation":
        if not isinstance(d, Mapping):
            raise policy_invalid("escalation must be an object", path=path)
        target = _pick(d, "if_outside", "ifOutside")
        if target is not None and not isinstance(target, str):
            raise policy_invalid("escalation target must be a string", path=path)
        notify = _pick(d, "notify", default=()) or ()
        if not isinstance(notify, (list, tuple)) or not all(isinstance(n, str) for n in notify):
            raise policy_invalid("escalation notify must be a list of strings", path=path)
        timeout = _pick(d, "timeout_hours", "timeoutHours")
        if timeout is not None and not is_number(timeout):
            raise policy_invalid("escalation timeout must be numeric", path=path)
        return cls(if_outside=target or None, notify=tuple(notify), timeout_hours=timeout)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {}
        if self.if_outside:
            d["if_outside"] = self.if_outside
        if self.notify:
            d["notify"] = list(self.notify)
        if self.timeout_hours is not None:
            d["timeout_hours"] = self.timeout_hours
        return d


@dataclass(frozen=True)
class Authority:
    action: str
    autonomy_bands: Tuple[AutonomyBand, ...] = ()
    escalation: Optional[Escalation] = None

    @property
    def escalation_target(self) -> str:
        if self.escalation is not None and self.escalation.if_outside:
            return self.escalation.if_outside
        return DEFAULT_ESCALATION_TARGET

    @classmethod
    def from_dict(cls, d: Mapping[str, Any], path: str = "authority") -> "Authority":
        if not isinstance(d, Mapping):
            raise policy_invalid("authority must be an object", path=path)
        action = d.get("action")
        if not isinstance(action, str) or not action:
            raise policy_invalid("authority action must be a non-empty string", path=path)
        bands_raw = _pick(d, "autonomy_bands", "autonomyBands", default=[]) or []
        if not isinstance(bands_raw, list):
            raise policy_invalid("autonomy bands must be a list", path=path)
        bands = tuple(
            AutonomyBand.from_dict(b, path=f"{path}.bands[{i}]") for i, b in enumerate(bands_raw)
        )
        esc_raw = d.get("escalation")
        escalation = Escalation.from_dict(esc_raw, path=f"{path}.escalation") if esc_raw is not None else None
        return cls(action=action, autonomy_bands=bands, escalation=escalation)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "action": self.action,
            "autonomy_bands": [b.to_dict() for b in self.autonomy_bands],
        }
        if self.escalation is not None:
            d["escalation"] = self.escalation.to_dict()
        return d


@dataclass(frozen=True)
class PolicyNode:
    authorities: Tuple[Authority, ...] = ()

    def find_authority(self, action: str) -> Optional[Authority]:
        for authority in self.authorities:
            if authority.action == action:
                return authority
        return None


@dataclass(frozen=True)
class PolicyDocument:
    version: str
    nodes: Dict[str, PolicyNode] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "PolicyDocument":
        if not isinstance(d, Mapping):
            raise policy_invalid("policy document must be an object")
        nodes_raw = d.get("nodes")
        if not isinstance(nodes_raw, Mapping):
            raise policy_invalid("policy document must contain a 'nodes' object")
        nodes: Dict[str, PolicyNode] = {}
        for node_name, node_raw in nodes_raw.items():
            if not isinstance(node_raw, Mapping):
                raise policy_invalid("node must be an object", path=f"nodes.{node_name}")
            auth_raw = node_raw.get("authorities") or []
            if not isinstance(auth_raw, list):
                raise policy_invalid("authorities must be a list", path=f"nodes.{node_name}")
            nodes[str(node_name)] = PolicyNode(
                authorities=tuple(
                    Authority.from_dict(a, path=f"nodes.{node_name}.authorities[{i}]")
                    for i, a in enumerate(auth_raw)
                )
            )
        return cls(version=str(d.get("version") or ""), nodes=nodes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "nodes": {
                name: {"authorities": [a.to_dict() for a in node.authorities]}
                for name, node in self.nodes.items()
            },
        }


@dataclass(frozen=True)
class PolicyVersion:
    """One published row: (name, version, doc, created_at)."""

    name: str
    version: str
    doc: PolicyDocument
    created_at: str

    @property
    def variant(self) -> str:
        return f"{self.name}@{self.version}"


@dataclass(frozen=True)
class PolicyReference:
    """A parsed `name` or `name@version` reference. `version=None` means latest."""

    name: str
    version: Optional[str] = None

    @classmethod
    def parse(cls, reference: str) -> "PolicyReference":
        raw = (reference or "").strip()
        parts: List[str] = raw.split("@")
        if len(parts) > 2 or not parts[0]:
            raise bad_request(
                f"Couldn't parse policy name and version from: {reference!r}. "
                "Expected format: <name> or <name>@<version>.",
                reference=reference,
            )
        version = parts[1] if len(parts) == 2 and parts[1] else None
        return cls(name=parts[0], version=version)

    @property
    def cache_key(self) -> str:
        # Parsed versions never contain "@", so no pinned key can equal this one.
        if self.version is None:
            return f"{self.name}@{LATEST_SLOT}"
        return f"{self.name}@{self.version}"

    def __str__(self) -> str:
        return self.name if self.version is None else f"{self.name}@{self.version}"
