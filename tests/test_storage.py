import sqlite3
import threading

import pytest

import adl_gateway.storage as storage_mod
from adl_gateway.errors import ADLError, ADL_E_BAD_REQUEST, ADL_E_CONFLICT, ADL_E_LOCKDOWN_ACTIVE, ADL_E_STORAGE
from adl_gateway.policy import PolicyDocument
from adl_gateway.storage import LedgerStore


def test_publish_and_resolve_versions(store, finance_doc):
    doc = PolicyDocument.from_dict(finance_doc)
    store.publish_policy("finance-constitution", "1.0.0", doc)
    store.publish_policy("finance-constitution", "1.1.0", doc)

    assert store.get_latest_policy("finance-constitution").version == "1.1.0"
    assert store.get_policy_version("finance-constitution", "1.0.0").doc == doc
    assert store.get_policy_version("finance-constitution", "2.0.0") is None
    assert store.get_latest_policy("hr-constitution") is None
    assert store.list_policy_versions("finance-constitution") == ["1.0.0", "1.1.0"]


def test_publishing_existing_version_conflicts(store, finance_doc):
    doc = PolicyDocument.from_dict(finance_doc)
    store.publish_policy("finance-constitution", "1.0.0", doc)
    with pytest.raises(ADLError) as ei:
        store.publish_policy("finance-constitution", "1.0.0", doc)
    assert ei.value.code == ADL_E_CONFLICT
    assert ei.value.http_status == 409


def test_publishing_rejects_at_sign(store, finance_doc):
    doc = PolicyDocument.from_dict(finance_doc)
    with pytest.raises(ADLError) as ei:
        store.publish_policy("finance-constitution", "@latest", doc)
    assert ei.value.code == ADL_E_BAD_REQUEST
    assert store.list_policy_versions("finance-constitution") == []


def test_outcome_upsert_replaces_metrics(store):
    first = store.upsert_outcome("d-1", {"success": False}, "cid-1")
    second = store.upsert_outcome("d-1", {"success": True, "margin_pct": 0.3}, "cid-2")
    got = store.get_outcome("d-1")
    assert got.metrics == {"success": True, "margin_pct": 0.3}
    assert got.correlation_id == "cid-2"
    assert got.recorded_at == second.recorded_at
    assert second.recorded_at >= first.recorded_at
    assert store.get_outcome("d-2") is None


def test_outcome_reward_is_counted_once_per_decision(store):
    store.upsert_outcome("d-1", {"success": True}, "cid-1", variant="p@1", success=True)
    store.upsert_outcome("d-1", {"success": True}, "cid-1", variant="p@1", success=True)
    s = store.get_variant_stats("p@1")
    assert (s.alpha, s.beta) == (2, 1)
    assert store.get_outcome("d-1").applied_success is True

    # A flipped result moves the count instead of adding one.
    store.upsert_outcome("d-1", {"success": False}, "cid-2", variant="p@1", success=False)
    s = store.get_variant_stats("p@1")
    assert (s.alpha, s.beta) == (1, 2)
    assert store.get_outcome("d-1").applied_success is False

    store.upsert_outcome("d-1", {}, "cid-3", variant="p@1", success=None)
    s = store.get_variant_stats("p@1")
    assert (s.alpha, s.beta) == (1, 1)
    assert store.get_outcome("d-1").applied_success is None


def test_outcome_without_variant_leaves_stats_alone(store):
    store.upsert_outcome("d-1", {"success": True}, None, success=True)
    assert store.get_outcome("d-1").applied_success is None
    assert store.get_variant_stats("p@1") is None


def test_concurrent_retries_of_one_outcome_count_once(store):
    def worker():
        for _ in range(10):
            store.upsert_outcome("d-1", {"success": True}, None, variant="p@1", success=True)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    s = store.get_variant_stats("p@1")
    assert (s.alpha, s.beta) == (2, 1)


def test_existing_outcome_table_gains_applied_column(tmp_path):
    db = str(tmp_path / "old.db")
    with sqlite3.connect(db) as conn:
        conn.execute(
            "CREATE TABLE outcomes (decision_id TEXT PRIMARY KEY, metrics_json TEXT NOT NULL, "
            "recorded_at TEXT NOT NULL, correlation_id TEXT)"
        )
        conn.execute("INSERT INTO outcomes VALUES ('d-1', '{}', '2024-01-01T00:00:00.000000Z', NULL)")
    conn.close()

    store = LedgerStore(db)
    assert store.get_outcome("d-1").applied_success is None
    store.upsert_outcome("d-1", {"success": True}, None, variant="p@1", success=True)
    assert store.get_outcome("d-1").applied_success is True


def test_variant_stats_are_created_lazily_at_uniform_prior(store):
    rows = store.ensure_variant_stats(["p@1", "p@2", "p@1"])
    assert sorted((r.variant, r.alpha, r.beta) for r in rows) == [("p@1", 1, 1), ("p@2", 1, 1)]
    store.increment_variant_stats("p@1", True)
    rows = store.ensure_variant_stats(["p@1"])
    assert (rows[0].alpha, rows[0].beta) == (2, 1)


def test_ensure_variant_stats_skips_the_write_when_rows_exist(store, monkeypatch):
    store.ensure_variant_stats(["p@1", "p@2"])

    statements = []
    real_connect = sqlite3.connect

    def traced_connect(*args, **kwargs):
        conn = real_connect(*args, **kwargs)
        conn.set_trace_callback(statements.append)
        return conn

    monkeypatch.setattr(storage_mod.sqlite3, "connect", traced_connect)
    rows = store.ensure_variant_stats(["p@2", "p@1"])
    assert sorted(r.variant for r in rows) == ["p@1", "p@2"]
    assert not any(s.startswith(("BEGIN", "INSERT")) for s in statements)

    statements.clear()
    store.ensure_variant_stats(["p@1", "p@3"])
    assert "BEGIN IMMEDIATE" in statements
    assert store.get_variant_stats("p@3").alpha == 1


def test_increment_on_unseen_variant_starts_from_prior(store):
    s = store.increment_variant_stats("p@new", False)
    assert (s.alpha, s.beta) == (1, 2)


def test_concurrent_increments_are_atomic(store):
    def worker():
        for _ in range(25):
            store.increment_variant_stats("p@1", True)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    s = store.get_variant_stats("p@1")
    assert (s.alpha, s.beta) == (101, 1)


def test_events_are_appended(store):
    e1 = store.record_event("deal_closed", "crm", {"amount": 100}, "cid-1")
    e2 = store.record_event("deal_lost", "crm", {}, None)
    assert e2.event_id > e1.event_id
    events = store.list_events()
    assert [e.type for e in events] == ["deal_lost", "deal_closed"]
    assert events[1].payload == {"amount": 100}


def test_storage_failure_is_generic_then_locks_down(tmp_path, monkeypatch):
    monkeypatch.setenv("ADL_DB_CONNECT_TIMEOUT_SECONDS", "0.01")
    monkeypatch.setenv("ADL_DB_FAILURE_THRESHOLD", "1")
    monkeypatch.setenv("ADL_DB_LOCKDOWN_SECONDS", "60")

    store = LedgerStore(str(tmp_path / "ledger.db"))

    def _boom(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(storage_mod.sqlite3, "connect", _boom)

    with pytest.raises(ADLError) as ei:
        store.get_outcome("d-1")
    assert ei.value.code == ADL_E_STORAGE
    assert "locked" not in ei.value.message

    # Once tripped, all subsequent store ops fail-closed during the lockdown window.
    with pytest.raises(ADLError) as ei:
        store.get_outcome("d-1")
    assert ei.value.code == ADL_E_LOCKDOWN_ACTIVE
    assert ei.value.http_status == 503
