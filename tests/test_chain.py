import sqlite3
import threading
import time
from datetime import datetime, timezone

import pytest

import adl_gateway.chain as chain_mod
from adl_gateway.chain import DecisionChain, verify_chain
from adl_gateway.errors import ADLError, ADL_E_TIMEOUT
from adl_gateway.evaluator import EvaluationResult
from adl_gateway.policy import AutonomyBand


def _approved(level=1):
    return EvaluationResult(
        approved=True,
        autonomy_level=level,
        reason=f"Approved under AL{level} constraints",
        matched_band=AutonomyBand(level=level, constraints={"max_discount_pct": 0.05}),
    )


def _append(chain, i=0, cid="cid-1"):
    return chain.append("finance", "approve_discount", _approved(), {"discount_pct": 0.01 * i}, "finance-constitution@1.0.0", cid)


def test_prev_hash_links_follow_insertion_order(store):
    chain = DecisionChain(store)
    decisions = [_append(chain, i) for i in range(4)]

    assert decisions[0].prev_hash is None
    for prev, cur in zip(decisions, decisions[1:]):
        assert cur.prev_hash == prev.hash
        assert cur.ts >= prev.ts

    stored = store.list_decisions()
    assert [d.decision_id for d in stored] == [d.decision_id for d in decisions]
    assert chain.verify() == (True, [])
    assert chain.head().decision_id == decisions[-1].decision_id


def test_stored_record_round_trips(store):
    chain = DecisionChain(store)
    d = _append(chain, 3, cid="abc")
    loaded = store.get_decision(d.decision_id)
    assert loaded == d
    assert loaded.correlation_id == "abc"
    assert loaded.matched_constraints == {"max_discount_pct": 0.05}
    assert loaded.latency_ms >= 0


def test_tampered_output_is_detected(store):
    chain = DecisionChain(store)
    for i in range(3):
        _append(chain, i)
    with sqlite3.connect(store.db_path) as conn:
        conn.execute(
            "UPDATE decisions SET output_json = replace(output_json, 'true', 'false') WHERE seq = 2"
        )
    ok, errors = chain.verify()
    assert ok is False
    assert any("content hash mismatch" in e for e in errors)


def test_deleted_record_breaks_chain(store):
    chain = DecisionChain(store)
    for i in range(3):
        _append(chain, i)
    with sqlite3.connect(store.db_path) as conn:
        conn.execute("DELETE FROM decisions WHERE seq = 2")
    ok, errors = chain.verify()
    assert ok is False
    assert any("chain broken" in e for e in errors)


def test_verify_rejects_non_null_first_prev_hash(store):
    chain = DecisionChain(store)
    for i in range(2):
        _append(chain, i)
    ok, errors = verify_chain(store.list_decisions()[1:])
    assert ok is False
    assert "first prev_hash should be null" in errors[0]


def test_expired_deadline_writes_nothing(store):
    chain = DecisionChain(store)
    with pytest.raises(ADLError) as ei:
        chain.append(
            "finance", "approve_discount", _approved(), {}, "finance-constitution@1.0.0", "cid",
            deadline=time.monotonic() - 1,
        )
    assert ei.value.code == ADL_E_TIMEOUT
    assert store.count_decisions() == 0


def test_timestamp_never_goes_backwards(store, monkeypatch):
    chain = DecisionChain(store)
    first = _append(chain, 0)
    monkeypatch.setattr(chain_mod, "_now_utc", lambda: datetime(2000, 1, 1, tzinfo=timezone.utc))
    second = _append(chain, 1)
    assert second.ts == first.ts
    assert second.prev_hash == first.hash
    assert chain.verify()[0] is True


def test_concurrent_appends_keep_a_single_chain(store):
    chain = DecisionChain(store)
    errors = []

    def worker(n):
        try:
            for i in range(5):
                _append(chain, n * 10 + i)
        except Exception as e:  # pragma: no cover
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert store.count_decisions() == 20
    assert chain.verify() == (True, [])


def test_two_chains_on_one_store_stay_consistent(store):
    # Separate in-process locks; the IMMEDIATE transaction still serializes.
    a = DecisionChain(store)
    b = DecisionChain(store)
    threads = [
        threading.Thread(target=lambda c=c: [_append(c, i) for i in range(5)])
        for c in (a, b)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert store.count_decisions() == 10
    assert a.verify() == (True, [])
