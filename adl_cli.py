#!/usr/bin/env python3
"""
Autonomy Decision Ledger - Command Line Interface

Usage:
    adl seed [policy.json] [--name N] [--version V]   Publish a policy version
                                                      (no file: the finance sample policy)
    adl verify [--anchor FILE --public-key HEX]       Verify decision chain integrity
    adl history [--limit N]                           Show recent decisions
    adl anchor --out FILE                             Write a signed anchor of the chain head
    adl keygen                                        Print a fresh anchor signing seed
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from adl_gateway.anchors import AnchorSigner, ChainAnchor, load_anchor_signer_from_env, verify_anchor
from adl_gateway.chain import verify_chain
from adl_gateway.errors import ADLError, ADL_E_CONFLICT
from adl_gateway.policy import PolicyDocument
from adl_gateway.storage import LedgerStore

logger = logging.getLogger("adl_gateway.cli")

FINANCE_POLICY_NAME = "finance-constitution"

FINANCE_POLICY = {
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


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )


def load_json_file(path: Path) -> dict:
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in '{path}': {e}") from e


def cmd_seed(args):
    """Publish a policy version. An existing (name, version) is skipped, not an error."""
    if args.policy_file:
        doc_raw = load_json_file(Path(args.policy_file))
        name = args.name
        if not name:
            print("✗ --name is required when a policy file is given")
            sys.exit(2)
    else:
        doc_raw = FINANCE_POLICY
        name = args.name or FINANCE_POLICY_NAME
    version = args.version or str(doc_raw.get("version") or "")
    if not version:
        print("✗ no version: pass --version or set 'version' in the document")
        sys.exit(2)

    store = LedgerStore(args.db)
    try:
        store.publish_policy(name, version, PolicyDocument.from_dict(doc_raw))
    except ADLError as e:
        if e.code == ADL_E_CONFLICT:
            print(f"Policy {name}@{version} already exists, skipping")
            return
        print(f"✗ {e}")
        sys.exit(1)
    print(f"✓ Seeded {name}@{version}")


def cmd_verify(args):
    """Verify decision chain links and recompute content hashes."""
    store = LedgerStore(args.db)
    decisions = store.list_decisions()

    print(f"Verifying decision chain in {args.db}...")
    print(f"Total decisions: {len(decisions)}")

    valid, errors = verify_chain(decisions)
    if valid:
        print("✓ Chain links and hashes: OK")
    else:
        print("✗ Chain links and hashes: ERRORS FOUND")
        for err in errors:
            print(f"  - {err}")

    anchor_ok = True
    if args.anchor:
        if not args.public_key:
            print("✗ --public-key is required with --anchor")
            sys.exit(2)
        anchor = ChainAnchor.from_dict(load_json_file(Path(args.anchor)))
        at_position = store.get_decision_at(anchor.chain_length)
        anchor_ok, anchor_errors = verify_anchor(anchor, args.public_key, at_position.hash if at_position else None)
        if anchor_ok:
            print(f"✓ Anchor at length {anchor.chain_length}: OK")
        else:
            print("✗ Anchor: ERRORS FOUND")
            for err in anchor_errors:
                print(f"  - {err}")

    if valid and anchor_ok:
        print("\n✓ Decision ledger integrity verified")
        sys.exit(0)
    else:
        print("\n✗ Decision ledger integrity check FAILED")
        sys.exit(1)


def cmd_history(args):
    """Show recent decisions, oldest first."""
    store = LedgerStore(args.db)
    decisions = store.list_decisions(limit=args.limit, newest_first=True)

    print(f"\n{'='*60}")
    print(f"DECISION HISTORY (last {len(decisions)} decisions)")
    print(f"{'='*60}")

    for d in reversed(decisions):
        print(f"\n{d.ts} | {d.node}.{d.action} | {d.policy_version}")
        print(f"  Approved: {d.approved}, Autonomy level: AL{d.autonomy_level}")
        print(f"  Reason: {d.output.get('reason', '')[:70]}")
        print(f"  Hash: {d.hash[:16]}...")

    print(f"\n{'='*60}")
    print(f"Total decisions in database: {store.count_decisions()}")
    print(f"{'='*60}\n")


def cmd_anchor(args):
    """Sign the current chain head with ADL_ANCHOR_SIGNING_KEY and write it to --out."""
    signer = load_anchor_signer_from_env()
    if signer is None:
        print("✗ ADL_ANCHOR_SIGNING_KEY is not set")
        sys.exit(2)
    store = LedgerStore(args.db)
    head, length = store.get_chain_head()
    anchor = signer.anchor(head.hash if head else None, length)
    Path(args.out).write_text(json.dumps(anchor.to_dict(), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    print(f"✓ Anchored chain length {length} -> {args.out}")
    print(f"  Public key: {signer.public_key_hex}")


def cmd_keygen(args):
    """Print a fresh anchor signing seed and its public key."""
    signer = AnchorSigner.generate(args.key_id)
    print(json.dumps({"key_id": signer.key_id, "seed_hex": signer.seed_hex, "public_key_hex": signer.public_key_hex}, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Autonomy Decision Ledger CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--db", default="adl_ledger.db", help="Path to ledger database")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    seed_parser = subparsers.add_parser("seed", help="Publish a policy version")
    seed_parser.add_argument("policy_file", nargs="?", help="Policy document JSON (default: finance sample)")
    seed_parser.add_argument("--name", help="Policy name (e.g. finance-constitution)")
    seed_parser.add_argument("--version", help="Policy version (default: the document's 'version')")
    seed_parser.set_defaults(func=cmd_seed)

    verify_parser = subparsers.add_parser("verify", help="Verify decision chain integrity")
    verify_parser.add_argument("--anchor", help="Anchor JSON written by 'adl anchor'")
    verify_parser.add_argument("--public-key", help="Hex Ed25519 public key for the anchor")
    verify_parser.set_defaults(func=cmd_verify)

    history_parser = subparsers.add_parser("history", help="Show recent decisions")
    history_parser.add_argument("--limit", type=int, default=20, help="Number of decisions")
    history_parser.set_defaults(func=cmd_history)

    anchor_parser = subparsers.add_parser("anchor", help="Write a signed anchor of the chain head")
    anchor_parser.add_argument("--out", required=True, help="Output JSON path")
    anchor_parser.set_defaults(func=cmd_anchor)

    keygen_parser = subparsers.add_parser("keygen", help="Generate an anchor signing seed")
    keygen_parser.add_argument("--key-id", default="adl-anchor", help="Key identifier")
    keygen_parser.set_defaults(func=cmd_keygen)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    setup_logging(args.verbose)
    args.func(args)


if __name__ == "__main__":
    main()
