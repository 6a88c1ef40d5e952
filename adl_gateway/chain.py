"""Hash-chained decision ledger.

Each decision commits to the hash of the decision written immediately before
it, so the `prev_hash` pointers reproduce insertion order. Appends are
serialized twice: by an in-process lock and by the ledger's write transaction,
which reads the head and inserts the new record atomically.

A deadline that expires while waiting for the lock, or before the insert,
fails the append with nothing written. Appends are never retried here.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from .canonical import compute_decision_hash
from .errors import timeout_error
from .evaluator import EvaluationResult
from .records import Decision, _now_utc, iso_ts
from .storage import DecisionBuilder
from .timeouts import remaining

logger = logging.getLogger("adl_gateway.chain")


class DecisionLedger(Protocol):
    def append_decision(self, build: DecisionBuilder, deadline: Optional[float] = None) -> Decision: ...

    def get_last_decision(self) -> Optional[Decision]: ...

    def list_decisions(self, limit: Optional[int] = None, newest_first: bool = False) -> List[Decision]: ...


def verify_chain(decisions: Sequence[Decision]) -> Tuple[bool, List[str]]:
    """Check links, first-record genesis, timestamps and content hashes.

    Returns (is_valid, errors), decisions given in insertion order.
    """
    errors: List[str] = []
    prev: Optional[Decision] = None
    for i, d in enumerate(decisions):
        if prev is None:
            if d.prev_hash is not None:
                errors.append(f"Decision 0 ({d.decision_id}): first prev_hash should be null, got {d.prev_hash[:16]}...")
        else:
            if d.prev_hash != prev.hash:
                errors.append(
                    f"Decision {i} ({d.decision_id}): chain broken. Expected prev_hash={prev.hash[:16]}..., "
                    f"got {(d.prev_hash or 'null')[:16]}"
                )
            if d.ts < prev.ts:
                errors.append(f"Decision {i} ({d.decision_id}): timestamp goes backwards")
        expected = compute_decision_hash(d.inputs, d.output, d.prev_hash, d.policy_version)
        if expected != d.hash:
            errors.append(f"Decision {i} ({d.decision_id}): content hash mismatch")
        prev = d
    return (len(errors) == 0, errors)


class DecisionChain:
    def __init__(self, ledger: DecisionLedger):
        self.ledger = ledger
        self._lock = threading.Lock()

    def append(
        self,
        node: str,
        action: str,
        evaluation: EvaluationResult,
        inputs: Dict[str, Any],
        policy_version: str,
        correlation_id: str,
        *,
        started_monotonic: Optional[float] = None,
        deadline: Optional[float] = None,
    ) -> Decision:
        started = time.monotonic() if started_monotonic is None else started_monotonic
        output = evaluation.to_output()

        def build(prev_hash: Optional[str], head_ts: Optional[str]) -> Decision:
            ts = iso_ts(_now_utc())
            # Never earlier than the head.
            if head_ts is not None and ts < head_ts:
                ts = head_ts
            return Decision(
                decision_id=str(uuid.uuid4()),
                ts=ts,
                node=node,
                action=action,
                policy_version=policy_version,
                inputs=dict(inputs),
                output=output,
                autonomy_level=evaluation.autonomy_level,
                hash=compute_decision_hash(inputs, output, prev_hash, policy_version),
                prev_hash=prev_hash,
                correlation_id=correlation_id,
                latency_ms=round((time.monotonic() - started) * 1000.0, 3),
            )

        wait = remaining(deadline)
        if not self._lock.acquire(timeout=-1 if wait is None else wait):
            raise timeout_error("chain_lock")
        try:
            decision = self.ledger.append_decision(build, deadline)
        finally:
            self._lock.release()

        logger.info(
            "chained decision %s node=%s action=%s level=%d cid=%s",
            decision.decision_id, node, action, decision.autonomy_level, correlation_id,
        )
        return decision

    def head(self) -> Optional[Decision]:
        return self.ledger.get_last_decision()

    def verify(self) -> Tuple[bool, List[str]]:
        return verify_chain(self.ledger.list_decisions())
