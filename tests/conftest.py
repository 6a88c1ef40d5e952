import copy

import pytest

from adl_gateway.config import Settings
from adl_gateway.lockdown import CircuitBreakerConfig, DbCircuitBreaker
from adl_gateway.service import DecisionService
from adl_gateway.storage import LedgerStore

FINANCE_DOC = {
    "version": "1.0.0",
    "nodes": {
        "finance": {
            "authorities": [
                {
                    "action": "approve_discount",
                    "autonomyBands": [
                        {"level": 1, "constraints": {"max_discount_pct": 0.05, "min_margin_pct": 0.25}},
                        {"level": 2, "constraints": {"max_discount_pct": 0.12, "min_margin_pct": 0.23}},
                        {"level": 3, "constraints": {"max_discount_pct": 0.15, "min_margin_pct": 0.22}},
                    ],
                    "escalation": {"ifOutside": "CFO"},
                }
            ]
        }
    },
}


@pytest.fixture
def finance_doc():
    return copy.deepcopy(FINANCE_DOC)


@pytest.fixture
def store(tmp_path):
    # Generous latency threshold so slow CI disks never trip lockdown.
    circuit = DbCircuitBreaker(CircuitBreakerConfig(latency_threshold_ms=30000, failure_threshold=3))
    return LedgerStore(str(tmp_path / "ledger.db"), circuit=circuit)


@pytest.fixture
def settings(tmp_path):
    return Settings(db_path=str(tmp_path / "ledger.db"), bandit_seed=7)


@pytest.fixture
def service(store, settings, finance_doc):
    svc = DecisionService(store, settings)
    svc.publish_policy("finance-constitution", "1.0.0", finance_doc)
    return svc
