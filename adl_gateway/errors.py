"""Stable error taxonomy for ADL.

This module defines machine-readable error codes and a single exception type
used across the policy store, evaluator, decision chain, and HTTP layer.

Design goals:
- Stable `code` string suitable for programmatic handling.
- `retryable` flag and `http_status` for transport layers.
- Structured `details` for debugging without parsing messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Caller errors
ADL_E_BAD_REQUEST = "ADL_E_BAD_REQUEST"
ADL_E_NOT_FOUND = "ADL_E_NOT_FOUND"
ADL_E_CONFLICT = "ADL_E_CONFLICT"

# Canonicalization / hashing
ADL_E_CANON_NON_JSON = "ADL_E_CANON_NON_JSON"
ADL_E_CANON_DEPTH = "ADL_E_CANON_DEPTH"
ADL_E_CANON_NONFINITE = "ADL_E_CANON_NONFINITE"
ADL_E_CANON_KEY_TYPE = "ADL_E_CANON_KEY_TYPE"

# Storage / runtime
ADL_E_STORAGE = "ADL_E_STORAGE"
ADL_E_LOCKDOWN_ACTIVE = "ADL_E_LOCKDOWN_ACTIVE"
ADL_E_TIMEOUT = "ADL_E_TIMEOUT"

# Configuration
ADL_E_POLICY_INVALID = "ADL_E_POLICY_INVALID"

# Generic
ADL_E_INTERNAL = "ADL_E_INTERNAL"


@dataclass
class ADLError(Exception):
    """Base ADL exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self, include_details: bool = True) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
        }
        if include_details and self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


def adl_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> ADLError:
    return ADLError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)


def bad_request(message: str, **details: Any) -> ADLError:
    return adl_error(ADL_E_BAD_REQUEST, message, http_status=400, **details)


def not_found(message: str, **details: Any) -> ADLError:
    return adl_error(ADL_E_NOT_FOUND, message, http_status=404, **details)


def storage_error(op_name: str) -> ADLError:
    """Generic storage failure. The cause is logged by the caller, never exposed."""
    return adl_error(ADL_E_STORAGE, "internal storage failure", retryable=True, http_status=500, op=op_name)


def timeout_error(op_name: str) -> ADLError:
    return adl_error(ADL_E_TIMEOUT, f"request deadline exceeded during {op_name}", retryable=True, http_status=504, op=op_name)


def policy_invalid(message: str, **details: Any) -> ADLError:
    return adl_error(ADL_E_POLICY_INVALID, message, http_status=500, **details)
