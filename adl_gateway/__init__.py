"""ADL Gateway package.

A policy-governed decision core:

- Versioned policy documents with a bounded TTL cache
- Deterministic autonomy-band evaluation
- A hash-chained, append-only decision ledger
- Outcome rewards feeding a Thompson Sampling router over policy versions

Convenience imports
------------------
The package avoids heavy import-time side effects. These are available as
top-level imports and are loaded lazily:

    from adl_gateway import DecisionService, LedgerStore, create_app
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments.

    The project version is a simple `version = "..."` field in
    `pyproject.toml`, so a regex parse is enough.
    """

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except OSError:
        return None


__version__ = _read_version_from_pyproject() or "1.0.0"

__all__ = [
    "__version__",
    "ADLError",
    "BanditRouter",
    "DecisionChain",
    "DecisionService",
    "LedgerStore",
    "PolicyCache",
    "PolicyStore",
    "Settings",
    "compute_reward",
    "create_app",
    "evaluate",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "ADLError": ("adl_gateway.errors", "ADLError"),
    "BanditRouter": ("adl_gateway.bandit", "BanditRouter"),
    "DecisionChain": ("adl_gateway.chain", "DecisionChain"),
    "DecisionService": ("adl_gateway.service", "DecisionService"),
    "LedgerStore": ("adl_gateway.storage", "LedgerStore"),
    "PolicyCache": ("adl_gateway.policy_store", "PolicyCache"),
    "PolicyStore": ("adl_gateway.policy_store", "PolicyStore"),
    "Settings": ("adl_gateway.config", "Settings"),
    "compute_reward": ("adl_gateway.reward", "compute_reward"),
    "create_app": ("adl_gateway.server", "create_app"),
    "evaluate": ("adl_gateway.evaluator", "evaluate"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'adl_gateway' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
