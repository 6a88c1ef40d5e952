"""Stable JSON serialization and decision hashing.

The decision hash commits to four parts joined with a fixed delimiter:

    sha256( stable(inputs) | stable(output) | prev_hash-or-"" | policy_version )

`stable()` sorts object keys recursively, keeps array order, and uses compact
separators, so the same logical arguments always produce the same digest
regardless of key insertion order. Non-finite floats and non-string keys are
rejected instead of being coerced.
"""

from __future__ import annotations

import hashlib
import json
import math
from typing import Any, Dict, Optional

from .errors import (
    adl_error,
    ADLError,
    ADL_E_CANON_DEPTH,
    ADL_E_CANON_KEY_TYPE,
    ADL_E_CANON_NON_JSON,
    ADL_E_CANON_NONFINITE,
)

HASH_DELIMITER = "|"

_MAX_DEPTH = 64


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _canonicalize(obj: Any, _path: str = "$", _depth: int = 0) -> Any:
    if _depth > _MAX_DEPTH:
        raise adl_error(ADL_E_CANON_DEPTH, "max nesting depth exceeded", path=_path, max_depth=_MAX_DEPTH)

    if obj is None or isinstance(obj, (bool, str, int)):
        return obj
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise adl_error(ADL_E_CANON_NONFINITE, "non-finite float", path=_path)
        return obj

    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            if not isinstance(k, str):
                raise adl_error(ADL_E_CANON_KEY_TYPE, "object key must be str", path=_path, got=type(k).__name__)
            out[k] = _canonicalize(v, f"{_path}.{k}", _depth + 1)
        return out

    if isinstance(obj, (list, tuple)):
        return [_canonicalize(v, f"{_path}[{i}]", _depth + 1) for i, v in enumerate(obj)]

    raise adl_error(ADL_E_CANON_NON_JSON, "non-JSON-serializable type", path=_path, got=type(obj).__name__)


def stable_json_dumps(obj: Any) -> str:
    """Deterministic JSON: sorted keys, compact separators, strict numbers."""
    try:
        return json.dumps(
            _canonicalize(obj),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )
    except ADLError:
        raise
    except (TypeError, ValueError) as e:
        raise adl_error(ADL_E_CANON_NON_JSON, f"value cannot be stably serialized: {e}") from e


def compute_decision_hash(
    inputs: Dict[str, Any],
    output: Dict[str, Any],
    prev_hash: Optional[str],
    policy_version: str,
) -> str:
    parts = [
        stable_json_dumps(inputs),
        stable_json_dumps(output),
        prev_hash or "",
        policy_version,
    ]
    return sha256_hex(HASH_DELIMITER.join(parts).encode("utf-8"))
