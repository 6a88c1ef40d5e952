import time

import pytest

from adl_gateway.errors import ADLError, ADL_E_NOT_FOUND, ADL_E_STORAGE, ADL_E_TIMEOUT
from adl_gateway.policy import PolicyDocument, PolicyVersion
from adl_gateway.policy_store import PolicyCache, PolicyCacheConfig, PolicyStore


class CountingRepo:
    def __init__(self, doc, versions=("1.0.0",)):
        self.doc = doc
        self.versions = list(versions)
        self.latest_calls = 0
        self.version_calls = 0
        self.fail = False

    def _row(self, name, version):
        return PolicyVersion(name=name, version=version, doc=self.doc, created_at="2024-01-01T00:00:00+00:00")

    def get_latest_policy(self, name):
        self.latest_calls += 1
        if self.fail:
            raise RuntimeError("connection reset")
        if name != "finance-constitution":
            return None
        return self._row(name, self.versions[-1])

    def get_policy_version(self, name, version):
        self.version_calls += 1
        if name != "finance-constitution" or version not in self.versions:
            return None
        return self._row(name, version)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def repo(finance_doc):
    return CountingRepo(PolicyDocument.from_dict(finance_doc), versions=("1.0.0", "1.1.0"))


def _store(repo, clock, ttl=60.0, max_items=1024):
    return PolicyStore(repo, PolicyCache(PolicyCacheConfig(ttl_seconds=ttl, max_items=max_items), clock=clock))


def test_two_loads_within_ttl_hit_backing_store_once(repo):
    clock = FakeClock()
    ps = _store(repo, clock)
    first = ps.load("finance-constitution")
    clock.now += 59
    second = ps.load("finance-constitution")
    assert first is second
    assert repo.latest_calls == 1


def test_entry_expires_after_ttl(repo):
    clock = FakeClock()
    ps = _store(repo, clock)
    ps.load("finance-constitution")
    clock.now += 60
    ps.load("finance-constitution")
    assert repo.latest_calls == 1
    clock.now += 0.5
    ps.load("finance-constitution")
    assert repo.latest_calls == 2


def test_latest_and_pinned_use_separate_slots(repo):
    ps = _store(repo, FakeClock())
    latest = ps.load("finance-constitution")
    pinned = ps.load("finance-constitution@1.0.0")
    assert latest.version == "1.1.0"
    assert pinned.version == "1.0.0"
    ps.load("finance-constitution@1.0.0")
    assert repo.latest_calls == 1
    assert repo.version_calls == 1


def test_version_named_latest_has_its_own_slot(finance_doc):
    repo = CountingRepo(PolicyDocument.from_dict(finance_doc), versions=("latest", "1.1.0"))
    ps = _store(repo, FakeClock())
    assert ps.load("finance-constitution@latest").version == "latest"
    assert ps.load("finance-constitution").version == "1.1.0"
    assert repo.latest_calls == 1
    assert repo.version_calls == 1


def test_not_found(repo):
    ps = _store(repo, FakeClock())
    with pytest.raises(ADLError) as ei:
        ps.load("hr-constitution")
    assert ei.value.code == ADL_E_NOT_FOUND
    with pytest.raises(ADLError) as ei:
        ps.load("finance-constitution@9.9.9")
    assert ei.value.code == ADL_E_NOT_FOUND


def test_backing_failure_is_wrapped_as_storage_error(repo):
    repo.fail = True
    ps = _store(repo, FakeClock())
    with pytest.raises(ADLError) as ei:
        ps.load("finance-constitution")
    assert ei.value.code == ADL_E_STORAGE
    assert ei.value.retryable is True
    assert "connection reset" not in ei.value.message


def test_expired_deadline_never_reads_or_guesses(repo):
    ps = _store(repo, FakeClock())
    with pytest.raises(ADLError) as ei:
        ps.load("finance-constitution", deadline=time.monotonic() - 1)
    assert ei.value.code == ADL_E_TIMEOUT
    assert repo.latest_calls == 0


def test_cached_entry_served_even_past_deadline(repo):
    ps = _store(repo, FakeClock())
    ps.load("finance-constitution")
    assert ps.load("finance-constitution", deadline=time.monotonic() - 1).version == "1.1.0"


def test_cache_is_lru_bounded(repo):
    ps = _store(repo, FakeClock(), max_items=2)
    ps.load("finance-constitution@1.0.0")
    ps.load("finance-constitution@1.1.0")
    ps.load("finance-constitution")
    assert len(ps.cache) == 2
    ps.load("finance-constitution@1.0.0")
    assert repo.version_calls == 3


def test_cache_config_from_env_clamps(monkeypatch):
    monkeypatch.setenv("ADL_POLICY_CACHE_TTL_SECONDS", "-5")
    monkeypatch.setenv("ADL_POLICY_CACHE_MAX_ITEMS", "garbage")
    cfg = PolicyCacheConfig.from_env()
    assert cfg.ttl_seconds == 0.0
    assert cfg.max_items == 1024
