"""Signed chain-head anchors (Ed25519).

An anchor commits to (head_hash, chain_length, anchored_at). Once published
outside the ledger it lets an auditor detect truncation or rewriting of the
chain up to that point: the decision at position `chain_length` must still
carry `head_hash`, and the signature must verify against the anchor key.
"""

from __future__ import annotations

import base64
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from .canonical import stable_json_dumps
from .records import _now_utc, iso_ts

logger = logging.getLogger("adl_gateway.anchors")

ANCHOR_VERSION = "ADL_ANCHOR_V1"
DEFAULT_KEY_ID = "adl-anchor"


def _raw_public_bytes(public_key: Ed25519PublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


@dataclass(frozen=True)
class ChainAnchor:
    head_hash: Optional[str]
    chain_length: int
    anchored_at: str
    key_id: str
    signature_b64: str = ""
    version: str = ANCHOR_VERSION

    def signing_payload(self) -> bytes:
        return stable_json_dumps(
            {
                "version": self.version,
                "head_hash": self.head_hash,
                "chain_length": self.chain_length,
                "anchored_at": self.anchored_at,
                "key_id": self.key_id,
            }
        ).encode("utf-8")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "head_hash": self.head_hash,
            "chain_length": self.chain_length,
            "anchored_at": self.anchored_at,
            "key_id": self.key_id,
            "signature_b64": self.signature_b64,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "ChainAnchor":
        return cls(
            head_hash=d.get("head_hash"),
            chain_length=int(d["chain_length"]),
            anchored_at=str(d["anchored_at"]),
            key_id=str(d["key_id"]),
            signature_b64=str(d.get("signature_b64") or ""),
            version=str(d.get("version") or ANCHOR_VERSION),
        )


class AnchorSigner:
    def __init__(self, private_key: Ed25519PrivateKey, key_id: str = DEFAULT_KEY_ID):
        self._private_key = private_key
        self.key_id = key_id

    @classmethod
    def generate(cls, key_id: str = DEFAULT_KEY_ID) -> "AnchorSigner":
        return cls(Ed25519PrivateKey.generate(), key_id)

    @classmethod
    def from_seed_hex(cls, seed_hex: str, key_id: str = DEFAULT_KEY_ID) -> "AnchorSigner":
        seed = bytes.fromhex(seed_hex.strip())
        if len(seed) != 32:
            raise ValueError(f"Seed must be 32 bytes, got {len(seed)}")
        return cls(Ed25519PrivateKey.from_private_bytes(seed), key_id)

    @property
    def seed_hex(self) -> str:
        return self._private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        ).hex()

    @property
    def public_key_hex(self) -> str:
        return _raw_public_bytes(self._private_key.public_key()).hex()

    def anchor(self, head_hash: Optional[str], chain_length: int) -> ChainAnchor:
        unsigned = ChainAnchor(
            head_hash=head_hash,
            chain_length=chain_length,
            anchored_at=iso_ts(_now_utc()),
            key_id=self.key_id,
        )
        sig = self._private_key.sign(unsigned.signing_payload())
        return ChainAnchor(
            head_hash=unsigned.head_hash,
            chain_length=unsigned.chain_length,
            anchored_at=unsigned.anchored_at,
            key_id=unsigned.key_id,
            signature_b64=base64.b64encode(sig).decode("ascii"),
        )


def verify_anchor_signature(anchor: ChainAnchor, public_key_hex: str) -> bool:
    try:
        public_key = Ed25519PublicKey.from_public_bytes(bytes.fromhex(public_key_hex.strip()))
        public_key.verify(base64.b64decode(anchor.signature_b64), anchor.signing_payload())
        return True
    except (InvalidSignature, ValueError):
        return False


def verify_anchor(anchor: ChainAnchor, public_key_hex: str, hash_at_position: Optional[str]) -> Tuple[bool, List[str]]:
    """`hash_at_position` is the hash currently stored at position `chain_length`."""
    errors: List[str] = []
    if anchor.version != ANCHOR_VERSION:
        errors.append(f"unsupported anchor version {anchor.version}")
    if not verify_anchor_signature(anchor, public_key_hex):
        errors.append("anchor signature invalid")
    if anchor.chain_length == 0:
        if anchor.head_hash is not None:
            errors.append("empty-chain anchor carries a head hash")
    elif hash_at_position is None:
        errors.append(f"chain truncated: no decision at position {anchor.chain_length}")
    elif hash_at_position != anchor.head_hash:
        errors.append(f"decision at position {anchor.chain_length} no longer matches anchored hash")
    return (len(errors) == 0, errors)


def load_anchor_signer_from_env() -> Optional[AnchorSigner]:
    """ADL_ANCHOR_SIGNING_KEY holds a hex seed; unset means anchors are unsigned/disabled."""
    seed_hex = (os.getenv("ADL_ANCHOR_SIGNING_KEY") or "").strip()
    if not seed_hex:
        return None
    key_id = (os.getenv("ADL_ANCHOR_KEY_ID") or DEFAULT_KEY_ID).strip()
    try:
        return AnchorSigner.from_seed_hex(seed_hex, key_id)
    except ValueError as e:
        logger.error("ADL_ANCHOR_SIGNING_KEY is not a valid 32-byte hex seed: %s", e)
        raise
