"""Decision service: orchestration of the decision and learning loop.

    decide:   bandit picks variant -> policy store loads doc -> evaluator
              -> decision chain appends
    outcome:  reward from matched constraints -> bandit settles the outcome
              and its variant stats (once per decision)

The core is synchronous (SQLite, pure evaluation). The async entry points run
it in a worker thread so the event loop never blocks on storage.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Dict, Mapping, Optional

from .anchors import AnchorSigner, load_anchor_signer_from_env
from .bandit import BanditRouter
from .chain import DecisionChain, verify_chain
from .config import Settings
from .errors import ADLError, bad_request, not_found
from .evaluator import ActionRequest, evaluate
from .metrics import record_bandit_selection, record_decision, record_outcome
from .ops_stats import OPS_STATS
from .policy import PolicyDocument, PolicyReference, PolicyVersion
from .policy_store import PolicyCache, PolicyStore
from .reward import compute_reward
from .storage import LedgerStore
from .timeouts import check_deadline, deadline_after

logger = logging.getLogger("adl_gateway")


def _new_correlation_id() -> str:
    return str(uuid.uuid4())


def _require_name(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise bad_request(f"{field_name} must be a non-empty string", field=field_name)
    return value.strip()


def _require_mapping(value: Any, field_name: str) -> Dict[str, Any]:
    if not isinstance(value, Mapping):
        raise bad_request(f"{field_name} must be an object", field=field_name)
    return dict(value)


class DecisionService:
    def __init__(
        self,
        store: LedgerStore,
        settings: Optional[Settings] = None,
        *,
        policy_store: Optional[PolicyStore] = None,
        bandit: Optional[BanditRouter] = None,
        chain: Optional[DecisionChain] = None,
        anchor_signer: Optional[AnchorSigner] = None,
    ):
        self.store = store
        self.settings = settings or Settings.from_env()
        self.policy_store = policy_store or PolicyStore(store, PolicyCache())
        self.bandit = bandit or BanditRouter(store, seed=self.settings.bandit_seed)
        self.chain = chain or DecisionChain(store)
        self.anchor_signer = anchor_signer

    @classmethod
    def from_env(cls) -> "DecisionService":
        settings = Settings.from_env()
        return cls(LedgerStore(settings.db_path), settings, anchor_signer=load_anchor_signer_from_env())

    # ---------------------------
    # Policies
    # ---------------------------

    def publish_policy(self, name: str, version: str, doc: Mapping[str, Any]) -> PolicyVersion:
        try:
            parsed = PolicyDocument.from_dict(doc)
        except ADLError as e:
            logger.error("rejected policy %s@%s: %s", name, version, e.message)
            raise
        published = self.store.publish_policy(_require_name(name, "name"), _require_name(version, "version"), parsed)
        self.policy_store.cache.invalidate(PolicyReference(published.name).cache_key)
        return published

    def _resolve_reference(self, node: str, policy_version: Optional[str], deadline: Optional[float] = None) -> str:
        if policy_version:
            return policy_version
        name = self.settings.policy_name_for(node)
        if not self.settings.bandit_enabled:
            return name
        check_deadline(deadline, "bandit_route")
        versions = self.store.list_policy_versions(name)
        if not versions:
            # Let the loader report NotFound.
            return name
        check_deadline(deadline, "bandit_route")
        variant = self.bandit.choose(f"{name}@{v}" for v in versions)
        record_bandit_selection(variant)
        return variant

    # ---------------------------
    # Decisions
    # ---------------------------

    def decide(
        self,
        node: str,
        action: str,
        data: Mapping[str, Any],
        correlation_id: Optional[str] = None,
        policy_version: Optional[str] = None,
    ) -> Dict[str, Any]:
        started = time.monotonic()
        deadline = deadline_after(self.settings.request_timeout_seconds)
        cid = correlation_id or _new_correlation_id()
        node = _require_name(node, "node")
        action = _require_name(action, "action")
        inputs = _require_mapping(data, "data")

        reference = self._resolve_reference(node, policy_version, deadline)
        policy = self.policy_store.load(reference, deadline)

        policy_node = policy.doc.nodes.get(node)
        if policy_node is None:
            raise not_found(f"Node {node} not found in policy {policy.variant}", node=node, policy=policy.variant)
        authority = policy_node.find_authority(action)
        if authority is None:
            raise bad_request(f"No authority defined for action {action} on node {node}", node=node, action=action)

        result = evaluate(ActionRequest(action=action, data=inputs), authority)
        decision = self.chain.append(
            node,
            action,
            result,
            inputs,
            policy.variant,
            cid,
            started_monotonic=started,
            deadline=deadline,
        )

        record_decision(node, decision.autonomy_level, decision.approved, decision.latency_ms)
        OPS_STATS.record_decision(node, decision.autonomy_level, decision.approved)
        logger.info(
            "decision %s policy=%s approved=%s level=%d latency_ms=%.1f cid=%s",
            decision.decision_id, policy.variant, decision.approved, decision.autonomy_level,
            decision.latency_ms, cid,
        )
        return decision.to_response()

    async def make_decision(
        self,
        node: str,
        action: str,
        data: Mapping[str, Any],
        correlation_id: Optional[str] = None,
        policy_version: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await asyncio.to_thread(self.decide, node, action, data, correlation_id, policy_version)

    # ---------------------------
    # Outcomes
    # ---------------------------

    def report_outcome(
        self,
        decision_id: str,
        metrics: Mapping[str, Any],
        correlation_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        decision_id = _require_name(decision_id, "decision_id")
        metrics = _require_mapping(metrics, "metrics")
        decision = self.store.get_decision(decision_id)
        if decision is None:
            raise not_found(f"Decision {decision_id} not found", decision_id=decision_id)

        reward = compute_reward(decision, metrics, decision.matched_constraints)
        outcome = self.bandit.settle_outcome(decision_id, decision.policy_version, reward, metrics, correlation_id)

        label = "skipped" if reward is None else ("success" if reward.success else "failure")
        record_outcome(label)
        OPS_STATS.record_outcome(label)
        logger.info(
            "outcome decision=%s variant=%s reward=%s cid=%s",
            decision_id, decision.policy_version, reward.reason if reward else "skipped", correlation_id,
        )
        body = outcome.to_dict()
        body["reward"] = reward.to_dict() if reward is not None else None
        return body

    async def record_outcome(
        self,
        decision_id: str,
        metrics: Mapping[str, Any],
        correlation_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await asyncio.to_thread(self.report_outcome, decision_id, metrics, correlation_id)

    def fetch_outcome(self, decision_id: str) -> Dict[str, Any]:
        outcome = self.store.get_outcome(decision_id)
        if outcome is None:
            raise not_found(f"Outcome for decision {decision_id} not found", decision_id=decision_id)
        return outcome.to_dict()

    async def get_outcome(self, decision_id: str) -> Dict[str, Any]:
        return await asyncio.to_thread(self.fetch_outcome, decision_id)

    # ---------------------------
    # Events and chain audit
    # ---------------------------

    def record_event(
        self,
        type: str,
        actor: str,
        payload: Optional[Mapping[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        event = self.store.record_event(
            _require_name(type, "type"),
            _require_name(actor, "actor"),
            _require_mapping(payload if payload is not None else {}, "payload"),
            correlation_id,
        )
        logger.info("event %s type=%s actor=%s cid=%s", event.event_id, event.type, event.actor, correlation_id)
        return event.to_dict()

    def verify_chain(self) -> Dict[str, Any]:
        decisions = self.store.list_decisions()
        ok, errors = verify_chain(decisions)
        if not ok:
            logger.error("decision chain verification failed: %d problem(s)", len(errors))
        return {"ok": ok, "count": len(decisions), "errors": errors}

    def chain_head(self) -> Dict[str, Any]:
        head, length = self.store.get_chain_head()
        body: Dict[str, Any] = {
            "head_hash": head.hash if head else None,
            "head_decision_id": head.decision_id if head else None,
            "chain_length": length,
            "anchor": None,
        }
        if self.anchor_signer is not None:
            body["anchor"] = self.anchor_signer.anchor(body["head_hash"], length).to_dict()
            body["anchor_public_key"] = self.anchor_signer.public_key_hex
        return body
