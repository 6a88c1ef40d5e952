"""SQLite ledger store.

Holds published policy versions, the decision chain, outcomes, per-variant
bandit statistics and business events. Every operation goes through `_db()`,
which is guarded by the storage circuit breaker and turns SQLite failures into
a generic ADL_E_STORAGE error after logging the cause.

Connections run in autocommit mode; multi-statement operations open an
explicit `BEGIN IMMEDIATE` so the write lock is taken before the first read.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .canonical import stable_json_dumps
from .errors import adl_error, bad_request, storage_error, ADL_E_CONFLICT
from .lockdown import DbCircuitBreaker
from .policy import PolicyDocument, PolicyVersion
from .records import Decision, Event, Outcome, VariantStats, _now_utc, iso_ts
from .timeouts import check_deadline

logger = logging.getLogger("adl_gateway.storage")

# (prev_hash, head_ts) -> Decision
DecisionBuilder = Callable[[Optional[str], Optional[str]], Decision]

_DECISION_COLUMNS = (
    "decision_id, ts_utc, node, action, policy_version, inputs_json, output_json, "
    "autonomy_level, hash, prev_hash, correlation_id, latency_ms"
)


def _row_to_decision(row: Iterable[Any]) -> Decision:
    (decision_id, ts, node, action, policy_version, inputs_json, output_json,
     level, h, prev_hash, cid, latency_ms) = row
    return Decision(
        decision_id=decision_id,
        ts=ts,
        node=node,
        action=action,
        policy_version=policy_version,
        inputs=json.loads(inputs_json),
        output=json.loads(output_json),
        autonomy_level=int(level),
        hash=h,
        prev_hash=prev_hash,
        correlation_id=cid,
        latency_ms=float(latency_ms or 0.0),
    )


class LedgerStore:
    def __init__(self, db_path: str = "adl_ledger.db", circuit: Optional[DbCircuitBreaker] = None):
        self.db_path = db_path
        self.circuit = circuit or DbCircuitBreaker()
        self._init_db()

    @contextmanager
    def _db(self, op_name: str):
        """Connection wrapper with circuit breaker (fail-closed).

        ADLError raised by the caller's block passes through untouched; the
        open transaction is rolled back by `with conn`.
        """
        self.circuit.raise_if_lockdown()
        start = time.monotonic()
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=float(self.circuit.config.connect_timeout_seconds),
                isolation_level=None,
            )
            try:
                with conn:
                    yield conn
            finally:
                conn.close()
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            if not isinstance(e, sqlite3.OperationalError) or self.circuit.should_treat_operational_error_as_failure(str(e)):
                self.circuit.record_failure(e)
            logger.error("storage operation %s failed: %r", op_name, e)
            raise storage_error(op_name) from e
        elapsed_ms = (time.monotonic() - start) * 1000.0
        if elapsed_ms >= float(self.circuit.config.latency_threshold_ms):
            logger.warning("storage operation %s took %.1fms", op_name, elapsed_ms)
            self.circuit.record_latency(elapsed_ms)
        else:
            self.circuit.record_success()

    def _init_db(self) -> None:
        with self._db("init") as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")
            conn.execute("PRAGMA busy_timeout = 5000")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS policy_versions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                version TEXT NOT NULL,
                doc_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE (name, version)
            )
            """)
            conn.execute("""
            CREATE TABLE IF NOT EXISTS decisions (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                decision_id TEXT NOT NULL UNIQUE,
                ts_utc TEXT NOT NULL,
                node TEXT NOT NULL,
                action TEXT NOT NULL,
                policy_version TEXT NOT NULL,
                inputs_json TEXT NOT NULL,
                output_json TEXT NOT NULL,
                autonomy_level INTEGER NOT NULL,
                hash TEXT NOT NULL,
                prev_hash TEXT,
                correlation_id TEXT NOT NULL,
                latency_ms REAL NOT NULL DEFAULT 0
            )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_decisions_ts ON decisions (ts_utc, seq)")
            conn.execute("""
            CREATE TABLE IF NOT EXISTS outcomes (
                decision_id TEXT PRIMARY KEY,
                metrics_json TEXT NOT NULL,
                recorded_at TEXT NOT NULL,
                correlation_id TEXT,
                applied_success INTEGER
            )
            """)
            outcome_columns = {r[1] for r in conn.execute("PRAGMA table_info(outcomes)")}
            if "applied_success" not in outcome_columns:
                conn.execute("ALTER TABLE outcomes ADD COLUMN applied_success INTEGER")
            conn.execute("""
            CREATE TABLE IF NOT EXISTS policy_variants_stats (
                variant TEXT PRIMARY KEY,
                alpha INTEGER NOT NULL DEFAULT 1 CHECK (alpha >= 1),
                beta INTEGER NOT NULL DEFAULT 1 CHECK (beta >= 1),
                updated_at TEXT NOT NULL
            )
            """)
            conn.execute("""
            CREATE TABLE IF NOT EXISTS events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                type TEXT NOT NULL,
                actor TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                correlation_id TEXT,
                ts_utc TEXT NOT NULL
            )
            """)

    # ---------------------------
    # Policies
    # ---------------------------

    def publish_policy(self, name: str, version: str, doc: PolicyDocument) -> PolicyVersion:
        if "@" in name or "@" in version:
            raise bad_request("policy name and version must not contain '@'", name=name, version=version)
        created_at = iso_ts(_now_utc())
        try:
            with self._db("publish_policy") as conn:
                conn.execute(
                    "INSERT INTO policy_versions (name, version, doc_json, created_at) VALUES (?, ?, ?, ?)",
                    (name, version, stable_json_dumps(doc.to_dict()), created_at),
                )
        except sqlite3.IntegrityError as e:
            raise adl_error(
                ADL_E_CONFLICT,
                f"Policy {name}@{version} already exists",
                http_status=409,
                policy=name,
                version=version,
            ) from e
        logger.info("published policy %s@%s", name, version)
        return PolicyVersion(name=name, version=version, doc=doc, created_at=created_at)

    @staticmethod
    def _row_to_policy(row: Iterable[Any]) -> PolicyVersion:
        name, version, doc_json, created_at = row
        return PolicyVersion(
            name=name,
            version=version,
            doc=PolicyDocument.from_dict(json.loads(doc_json)),
            created_at=created_at,
        )

    def get_latest_policy(self, name: str) -> Optional[PolicyVersion]:
        with self._db("get_latest_policy") as conn:
            row = conn.execute(
                "SELECT name, version, doc_json, created_at FROM policy_versions "
                "WHERE name = ? ORDER BY created_at DESC, id DESC LIMIT 1",
                (name,),
            ).fetchone()
        return self._row_to_policy(row) if row else None

    def get_policy_version(self, name: str, version: str) -> Optional[PolicyVersion]:
        with self._db("get_policy_version") as conn:
            row = conn.execute(
                "SELECT name, version, doc_json, created_at FROM policy_versions WHERE name = ? AND version = ?",
                (name, version),
            ).fetchone()
        return self._row_to_policy(row) if row else None

    def list_policy_versions(self, name: str) -> List[str]:
        """Published versions of `name`, oldest first."""
        with self._db("list_policy_versions") as conn:
            rows = conn.execute(
                "SELECT version FROM policy_versions WHERE name = ? ORDER BY created_at ASC, id ASC",
                (name,),
            ).fetchall()
        return [r[0] for r in rows]

    # ---------------------------
    # Decisions
    # ---------------------------

    def append_decision(self, build: DecisionBuilder, deadline: Optional[float] = None) -> Decision:
        """Read the chain head and insert the record built on top of it, atomically."""
        with self._db("append_decision") as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT hash, ts_utc FROM decisions ORDER BY ts_utc DESC, seq DESC LIMIT 1"
            ).fetchone()
            decision = build(row[0] if row else None, row[1] if row else None)
            check_deadline(deadline, "chain_append")
            conn.execute(
                f"INSERT INTO decisions ({_DECISION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    decision.decision_id,
                    decision.ts,
                    decision.node,
                    decision.action,
                    decision.policy_version,
                    stable_json_dumps(decision.inputs),
                    stable_json_dumps(decision.output),
                    decision.autonomy_level,
                    decision.hash,
                    decision.prev_hash,
                    decision.correlation_id,
                    decision.latency_ms,
                ),
            )
        return decision

    def get_decision(self, decision_id: str) -> Optional[Decision]:
        with self._db("get_decision") as conn:
            row = conn.execute(
                f"SELECT {_DECISION_COLUMNS} FROM decisions WHERE decision_id = ?",
                (decision_id,),
            ).fetchone()
        return _row_to_decision(row) if row else None

    def get_last_decision(self) -> Optional[Decision]:
        with self._db("get_last_decision") as conn:
            row = conn.execute(
                f"SELECT {_DECISION_COLUMNS} FROM decisions ORDER BY ts_utc DESC, seq DESC LIMIT 1"
            ).fetchone()
        return _row_to_decision(row) if row else None

    def get_chain_head(self) -> Tuple[Optional[Decision], int]:
        """(last decision, chain length) from one read transaction."""
        with self._db("get_chain_head") as conn:
            conn.execute("BEGIN")
            row = conn.execute(
                f"SELECT {_DECISION_COLUMNS} FROM decisions ORDER BY ts_utc DESC, seq DESC LIMIT 1"
            ).fetchone()
            count = int(conn.execute("SELECT COUNT(*) FROM decisions").fetchone()[0])
        return (_row_to_decision(row) if row else None, count)

    def get_decision_at(self, position: int) -> Optional[Decision]:
        """1-based position in insertion order."""
        if position < 1:
            return None
        with self._db("get_decision_at") as conn:
            row = conn.execute(
                f"SELECT {_DECISION_COLUMNS} FROM decisions ORDER BY seq ASC LIMIT 1 OFFSET ?",
                (position - 1,),
            ).fetchone()
        return _row_to_decision(row) if row else None

    def list_decisions(self, limit: Optional[int] = None, newest_first: bool = False) -> List[Decision]:
        order = "DESC" if newest_first else "ASC"
        sql = f"SELECT {_DECISION_COLUMNS} FROM decisions ORDER BY seq {order}"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (int(limit),)
        with self._db("list_decisions") as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_decision(r) for r in rows]

    def count_decisions(self) -> int:
        with self._db("count_decisions") as conn:
            return int(conn.execute("SELECT COUNT(*) FROM decisions").fetchone()[0])

    # ---------------------------
    # Outcomes
    # ---------------------------

    def upsert_outcome(
        self,
        decision_id: str,
        metrics: Dict[str, Any],
        correlation_id: Optional[str],
        variant: Optional[str] = None,
        success: Optional[bool] = None,
    ) -> Outcome:
        """Insert or replace the outcome of a decision.

        With a `variant`, the reward `success` is settled against that
        variant's stats in the same transaction. The row remembers which
        reward is already counted, so a retried report changes nothing and a
        report that flips the result moves one count from alpha to beta (or
        back). `success=None` withdraws whatever was counted.
        """
        recorded_at = iso_ts(_now_utc())
        applied = success if variant is not None else None
        with self._db("upsert_outcome") as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT applied_success FROM outcomes WHERE decision_id = ?", (decision_id,)
            ).fetchone()
            previous = None if row is None or row[0] is None else bool(row[0])
            conn.execute(
                """
                INSERT INTO outcomes (decision_id, metrics_json, recorded_at, correlation_id, applied_success)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (decision_id) DO UPDATE SET
                    metrics_json = excluded.metrics_json,
                    recorded_at = excluded.recorded_at,
                    correlation_id = excluded.correlation_id,
                    applied_success = excluded.applied_success
                """,
                (
                    decision_id,
                    stable_json_dumps(metrics),
                    recorded_at,
                    correlation_id,
                    None if applied is None else int(applied),
                ),
            )
            if variant is not None:
                d_alpha = int(applied is True) - int(previous is True)
                d_beta = int(applied is False) - int(previous is False)
                if d_alpha or d_beta:
                    self._shift_variant_stats(conn, variant, d_alpha, d_beta, recorded_at)
        return Outcome(
            decision_id=decision_id,
            metrics=dict(metrics),
            recorded_at=recorded_at,
            correlation_id=correlation_id,
            applied_success=applied,
        )

    def get_outcome(self, decision_id: str) -> Optional[Outcome]:
        with self._db("get_outcome") as conn:
            row = conn.execute(
                "SELECT decision_id, metrics_json, recorded_at, correlation_id, applied_success "
                "FROM outcomes WHERE decision_id = ?",
                (decision_id,),
            ).fetchone()
        if row is None:
            return None
        return Outcome(
            decision_id=row[0],
            metrics=json.loads(row[1]),
            recorded_at=row[2],
            correlation_id=row[3],
            applied_success=None if row[4] is None else bool(row[4]),
        )

    # ---------------------------
    # Variant statistics
    # ---------------------------

    def get_variant_stats(self, variant: str) -> Optional[VariantStats]:
        with self._db("get_variant_stats") as conn:
            row = conn.execute(
                "SELECT variant, alpha, beta, updated_at FROM policy_variants_stats WHERE variant = ?",
                (variant,),
            ).fetchone()
        return VariantStats(*row) if row else None

    def ensure_variant_stats(self, variants: Iterable[str]) -> List[VariantStats]:
        """Create missing rows at alpha = beta = 1 and return all requested rows.

        Only takes the write lock when some row is missing.
        """
        wanted = list(dict.fromkeys(variants))
        if not wanted:
            return []
        placeholders = ",".join("?" for _ in wanted)
        select = f"SELECT variant, alpha, beta, updated_at FROM policy_variants_stats WHERE variant IN ({placeholders})"
        with self._db("ensure_variant_stats") as conn:
            rows = conn.execute(select, wanted).fetchall()
            if len(rows) < len(wanted):
                now = iso_ts(_now_utc())
                conn.execute("BEGIN IMMEDIATE")
                conn.executemany(
                    "INSERT OR IGNORE INTO policy_variants_stats (variant, alpha, beta, updated_at) VALUES (?, 1, 1, ?)",
                    [(v, now) for v in wanted],
                )
                rows = conn.execute(select, wanted).fetchall()
        return [VariantStats(*r) for r in rows]

    def increment_variant_stats(self, variant: str, success: bool) -> VariantStats:
        d_alpha, d_beta = (1, 0) if success else (0, 1)
        with self._db("increment_variant_stats") as conn:
            conn.execute("BEGIN IMMEDIATE")
            return self._shift_variant_stats(conn, variant, d_alpha, d_beta, iso_ts(_now_utc()))

    @staticmethod
    def _shift_variant_stats(
        conn: sqlite3.Connection, variant: str, d_alpha: int, d_beta: int, now: str
    ) -> VariantStats:
        # Caller holds the write transaction. An unseen variant starts from 1/1.
        conn.execute(
            """
            INSERT INTO policy_variants_stats (variant, alpha, beta, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (variant) DO UPDATE SET
                alpha = alpha + ?,
                beta = beta + ?,
                updated_at = excluded.updated_at
            """,
            (variant, 1 + max(d_alpha, 0), 1 + max(d_beta, 0), now, d_alpha, d_beta),
        )
        row = conn.execute(
            "SELECT variant, alpha, beta, updated_at FROM policy_variants_stats WHERE variant = ?",
            (variant,),
        ).fetchone()
        return VariantStats(*row)

    # ---------------------------
    # Events
    # ---------------------------

    def record_event(
        self,
        type: str,
        actor: str,
        payload: Dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> Event:
        ts = iso_ts(_now_utc())
        with self._db("record_event") as conn:
            cur = conn.execute(
                "INSERT INTO events (type, actor, payload_json, correlation_id, ts_utc) VALUES (?, ?, ?, ?, ?)",
                (type, actor, stable_json_dumps(payload), correlation_id, ts),
            )
            event_id = int(cur.lastrowid)
        return Event(event_id=event_id, type=type, actor=actor, payload=dict(payload), correlation_id=correlation_id, ts=ts)

    def list_events(self, limit: int = 100) -> List[Event]:
        with self._db("list_events") as conn:
            rows = conn.execute(
                "SELECT id, type, actor, payload_json, correlation_id, ts_utc FROM events ORDER BY id DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
        return [
            Event(event_id=r[0], type=r[1], actor=r[2], payload=json.loads(r[3]), correlation_id=r[4], ts=r[5])
            for r in rows
        ]
