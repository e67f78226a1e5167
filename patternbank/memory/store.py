"""PatternStore: durable, keyed storage for patterns, links and trajectories.

Every persisted row is owned here. Other components hold nothing across
calls; they read a snapshot, decide, and write back through this API.

Write discipline:
- every multi-statement write runs inside one BEGIN IMMEDIATE transaction
- pattern mutations bump ``version``; callers pass ``expected_version``
  to get compare-and-swap semantics (ConflictError on mismatch)
- ``row_lock(namespace, *ids)`` serializes read-modify-write cycles on
  the same pattern within this process without blocking other ids
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import timedelta
from typing import Iterable, List, Optional

from ..db.connection import connect, MEMORY_DB
from ..db.locks import RowLocks
from ..db.schema import (
    Pattern, PatternLink, TaskTrajectory,
    CONFIDENCE_FLOOR, CONFIDENCE_CEILING, RELATIONS, VERDICTS,
    embed_to_blob, now_iso, parse_ts, to_iso, utcnow,
)
from ..errors import (
    AlreadyReinforcedError, ConflictError, EmbeddingError, NotFoundError, ValidationError,
)
from ..logging_config import get_logger
from .embeddings import check_vector

log = get_logger("patternbank.store")


class PatternStore:
    """SQLite-backed store. One instance owns one connection."""

    def __init__(self, path=MEMORY_DB, embedding_dim: Optional[int] = None):
        self.path = str(path)
        self.db = connect(self.path)
        self._lock = threading.RLock()
        self._rows = RowLocks()
        self._dim = embedding_dim

    # -------------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------------

    @contextmanager
    def transaction(self):
        """Run the enclosed statements as one atomic write."""
        with self._lock:
            self.db.execute("BEGIN IMMEDIATE")
            try:
                yield self.db
            except BaseException:
                self.db.execute("ROLLBACK")
                raise
            self.db.execute("COMMIT")

    def row_lock(self, namespace: str, *ids: str):
        """Hold the per-row locks for the given pattern ids."""
        return self._rows.hold(*((namespace, i) for i in ids))

    def _query(self, sql: str, params=()) -> list:
        with self._lock:
            return self.db.execute(sql, params).fetchall()

    def _query_one(self, sql: str, params=()):
        with self._lock:
            return self.db.execute(sql, params).fetchone()

    @property
    def embedding_dim(self) -> Optional[int]:
        """Configured dimension, or the one fixed by the first stored pattern."""
        if self._dim is None:
            row = self._query_one("SELECT length(embedding) AS n FROM patterns LIMIT 1")
            if row and row["n"]:
                self._dim = row["n"] // 4
        return self._dim

    def close(self) -> None:
        with self._lock:
            self.db.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # -------------------------------------------------------------------------
    # Patterns
    # -------------------------------------------------------------------------

    def _validate_pattern(self, p: Pattern) -> tuple:
        if not p.id or not p.namespace:
            raise ValidationError("Pattern id and namespace are required")
        if not p.content or not p.content.strip():
            raise ValidationError("Pattern content is empty", id=p.id)
        if not CONFIDENCE_FLOOR <= p.confidence <= CONFIDENCE_CEILING:
            raise ValidationError(
                f"confidence must be in [{CONFIDENCE_FLOOR}, {CONFIDENCE_CEILING}]",
                id=p.id, confidence=p.confidence,
            )
        if p.usage_count < 0 or not 0 <= p.success_count <= p.usage_count:
            raise ValidationError("require 0 <= success_count <= usage_count", id=p.id)
        try:
            return check_vector(p.embedding, self.embedding_dim)
        except EmbeddingError as e:
            raise ValidationError(f"Invalid embedding: {e.message}", id=p.id) from e

    def put_pattern(self, p: Pattern, links: Iterable[PatternLink] = ()) -> Pattern:
        """Insert a pattern, or update its descriptive fields.

        Updates touch content, domain, tags and embedding only; learned
        state (confidence, counters) is owned by reinforce and merge.
        An update whose ``p.version`` does not match the stored row
        raises ConflictError. Links are written in the same transaction.
        """
        embedding = self._validate_pattern(p)
        links = list(links)
        for link in links:
            if link.relation not in RELATIONS:
                raise ValidationError(f"relation must be one of {RELATIONS}", relation=link.relation)

        with self.row_lock(p.namespace, p.id), self.transaction() as db:
            existing = db.execute(
                "SELECT version FROM patterns WHERE namespace=? AND id=?",
                (p.namespace, p.id)
            ).fetchone()

            if existing is None:
                db.execute(
                    """INSERT INTO patterns (namespace, id, content, domain, tags, embedding,
                       confidence, usage_count, success_count, created_at, last_used_at,
                       contradiction_flagged, version)
                       VALUES (?,?,?,?,?,?,?,?,?,?,?,?,0)""",
                    (p.namespace, p.id, p.content.strip(), p.domain or "", json.dumps(list(p.tags)),
                     embed_to_blob(embedding), p.confidence, p.usage_count, p.success_count,
                     to_iso(p.created_at) or now_iso(), to_iso(p.last_used_at),
                     int(p.contradiction_flagged))
                )
            else:
                if existing["version"] != p.version:
                    raise ConflictError(
                        "Pattern changed since it was read",
                        namespace=p.namespace, id=p.id,
                        expected=p.version, actual=existing["version"],
                    )
                db.execute(
                    """UPDATE patterns SET content=?, domain=?, tags=?, embedding=?, version=version+1
                       WHERE namespace=? AND id=?""",
                    (p.content.strip(), p.domain or "", json.dumps(list(p.tags)),
                     embed_to_blob(embedding), p.namespace, p.id)
                )

            for link in links:
                self._insert_link(db, link)

            row = db.execute(
                "SELECT * FROM patterns WHERE namespace=? AND id=?", (p.namespace, p.id)
            ).fetchone()

        log.debug("Stored pattern %s/%s", p.namespace, p.id)
        return Pattern.from_row(row)

    def get_pattern(self, namespace: str, pattern_id: str) -> Pattern:
        row = self._query_one(
            "SELECT * FROM patterns WHERE namespace=? AND id=?", (namespace, pattern_id)
        )
        if row is None:
            raise NotFoundError("Pattern not found", namespace=namespace, id=pattern_id)
        return Pattern.from_row(row)

    def has_pattern(self, namespace: str, pattern_id: str) -> bool:
        return self._query_one(
            "SELECT 1 FROM patterns WHERE namespace=? AND id=?", (namespace, pattern_id)
        ) is not None

    def get_candidates(self, namespace: str, domain: Optional[str] = None,
                       limit: Optional[int] = None) -> List[Pattern]:
        """Patterns eligible for scoring, ordered by id."""
        sql = "SELECT * FROM patterns WHERE namespace=?"
        params = [namespace]
        if domain:
            sql += " AND domain=?"
            params.append(domain)
        sql += " ORDER BY id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return [Pattern.from_row(r) for r in self._query(sql, params)]

    def update_confidence(
        self,
        namespace: str,
        pattern_id: str,
        new_confidence: float,
        usage_delta: int = 0,
        success_delta: int = 0,
        *,
        expected_version: Optional[int] = None,
        trajectory_id: Optional[str] = None,
        used_at=None,
    ) -> Pattern:
        """Atomic read-modify-write of a pattern's learned state.

        With ``trajectory_id`` the (trajectory, pattern) pair is recorded in
        the same transaction; a second application raises
        AlreadyReinforcedError. With ``expected_version`` the write only
        lands if nobody else changed the row first.
        """
        if not CONFIDENCE_FLOOR <= new_confidence <= CONFIDENCE_CEILING:
            raise ValidationError(
                f"confidence must be in [{CONFIDENCE_FLOOR}, {CONFIDENCE_CEILING}]",
                id=pattern_id, confidence=new_confidence,
            )
        if usage_delta < 0 or success_delta < 0 or success_delta > usage_delta:
            raise ValidationError("require 0 <= success_delta <= usage_delta", id=pattern_id)

        used_at = to_iso(used_at) if used_at is not None else now_iso()

        with self.row_lock(namespace, pattern_id), self.transaction() as db:
            row = db.execute(
                "SELECT version FROM patterns WHERE namespace=? AND id=?", (namespace, pattern_id)
            ).fetchone()
            if row is None:
                raise NotFoundError("Pattern not found", namespace=namespace, id=pattern_id)

            if trajectory_id is not None:
                try:
                    db.execute(
                        "INSERT INTO reinforcements (namespace, trajectory_id, pattern_id, applied_at) VALUES (?,?,?,?)",
                        (namespace, trajectory_id, pattern_id, used_at)
                    )
                except sqlite3.IntegrityError as e:
                    raise AlreadyReinforcedError(
                        "Trajectory already reinforced this pattern",
                        namespace=namespace, trajectory=trajectory_id, id=pattern_id,
                    ) from e

            if expected_version is not None and row["version"] != expected_version:
                raise ConflictError(
                    "Pattern changed since it was read",
                    namespace=namespace, id=pattern_id,
                    expected=expected_version, actual=row["version"],
                )

            db.execute(
                """UPDATE patterns SET confidence=?, usage_count=usage_count+?,
                   success_count=success_count+?, last_used_at=?, version=version+1
                   WHERE namespace=? AND id=?""",
                (new_confidence, usage_delta, success_delta, used_at, namespace, pattern_id)
            )
            updated = db.execute(
                "SELECT * FROM patterns WHERE namespace=? AND id=?", (namespace, pattern_id)
            ).fetchone()

        return Pattern.from_row(updated)

    def was_reinforced(self, namespace: str, trajectory_id: str, pattern_id: str) -> bool:
        return self._query_one(
            "SELECT 1 FROM reinforcements WHERE namespace=? AND trajectory_id=? AND pattern_id=?",
            (namespace, trajectory_id, pattern_id)
        ) is not None

    def merge_patterns(self, namespace: str, winner_id: str, loser_id: str) -> Pattern:
        """Fold loser into winner and delete loser, atomically.

        Winner keeps its content and embedding; counts are summed,
        confidence becomes the max of the pair, the contradiction flag is
        OR-ed, and every link or reinforcement record naming loser is
        rewritten to name winner.
        """
        if winner_id == loser_id:
            raise ValidationError("Cannot merge a pattern into itself", id=winner_id)

        with self.row_lock(namespace, winner_id, loser_id), self.transaction() as db:
            rows = {}
            for pid in (winner_id, loser_id):
                row = db.execute(
                    "SELECT * FROM patterns WHERE namespace=? AND id=?", (namespace, pid)
                ).fetchone()
                if row is None:
                    raise NotFoundError("Pattern not found", namespace=namespace, id=pid)
                rows[pid] = Pattern.from_row(row)
            winner, loser = rows[winner_id], rows[loser_id]

            last_used = [parse_ts(t) for t in (winner.last_used_at, loser.last_used_at) if t]
            db.execute(
                """UPDATE patterns SET usage_count=?, success_count=?, confidence=?,
                   last_used_at=?, contradiction_flagged=?, version=version+1
                   WHERE namespace=? AND id=?""",
                (winner.usage_count + loser.usage_count,
                 winner.success_count + loser.success_count,
                 max(winner.confidence, loser.confidence),
                 max(last_used).isoformat() if last_used else None,
                 int(winner.contradiction_flagged or loser.contradiction_flagged),
                 namespace, winner_id)
            )

            # Repoint links; duplicates of existing winner links are dropped
            db.execute(
                "UPDATE OR IGNORE pattern_links SET from_id=? WHERE namespace=? AND from_id=?",
                (winner_id, namespace, loser_id)
            )
            db.execute(
                "UPDATE OR IGNORE pattern_links SET to_id=? WHERE namespace=? AND to_id=?",
                (winner_id, namespace, loser_id)
            )
            db.execute(
                "DELETE FROM pattern_links WHERE namespace=? AND (from_id=? OR to_id=? OR from_id=to_id)",
                (namespace, loser_id, loser_id)
            )

            db.execute(
                "UPDATE OR IGNORE reinforcements SET pattern_id=? WHERE namespace=? AND pattern_id=?",
                (winner_id, namespace, loser_id)
            )
            db.execute(
                "DELETE FROM reinforcements WHERE namespace=? AND pattern_id=?", (namespace, loser_id)
            )
            db.execute("DELETE FROM patterns WHERE namespace=? AND id=?", (namespace, loser_id))

            merged = db.execute(
                "SELECT * FROM patterns WHERE namespace=? AND id=?", (namespace, winner_id)
            ).fetchone()

        log.info("Merged pattern %s into %s (namespace=%s)", loser_id, winner_id, namespace)
        return Pattern.from_row(merged)

    def delete_pattern(self, namespace: str, pattern_id: str,
                       expected_version: Optional[int] = None) -> None:
        """Hard delete a pattern with its links and reinforcement records."""
        with self.row_lock(namespace, pattern_id), self.transaction() as db:
            row = db.execute(
                "SELECT version FROM patterns WHERE namespace=? AND id=?", (namespace, pattern_id)
            ).fetchone()
            if row is None:
                raise NotFoundError("Pattern not found", namespace=namespace, id=pattern_id)
            if expected_version is not None and row["version"] != expected_version:
                raise ConflictError(
                    "Pattern changed since it was read",
                    namespace=namespace, id=pattern_id,
                    expected=expected_version, actual=row["version"],
                )
            db.execute(
                "DELETE FROM pattern_links WHERE namespace=? AND (from_id=? OR to_id=?)",
                (namespace, pattern_id, pattern_id)
            )
            db.execute(
                "DELETE FROM reinforcements WHERE namespace=? AND pattern_id=?", (namespace, pattern_id)
            )
            db.execute("DELETE FROM patterns WHERE namespace=? AND id=?", (namespace, pattern_id))

        log.debug("Deleted pattern %s/%s", namespace, pattern_id)

    def flag_contradiction(self, namespace: str, pattern_ids: Iterable[str]) -> int:
        """Set contradiction_flagged on each existing pattern. Returns rows changed."""
        ids = sorted(set(pattern_ids))
        changed = 0
        with self.row_lock(namespace, *ids), self.transaction() as db:
            for pid in ids:
                cur = db.execute(
                    """UPDATE patterns SET contradiction_flagged=1, version=version+1
                       WHERE namespace=? AND id=? AND contradiction_flagged=0""",
                    (namespace, pid)
                )
                changed += cur.rowcount
        return changed

    def clear_contradiction(self, namespace: str, pattern_id: str) -> Pattern:
        """Reviewer hook: clear the flag once a contradiction is resolved."""
        with self.row_lock(namespace, pattern_id), self.transaction() as db:
            cur = db.execute(
                """UPDATE patterns SET contradiction_flagged=0, version=version+1
                   WHERE namespace=? AND id=?""",
                (namespace, pattern_id)
            )
            if cur.rowcount == 0:
                raise NotFoundError("Pattern not found", namespace=namespace, id=pattern_id)
        return self.get_pattern(namespace, pattern_id)

    # -------------------------------------------------------------------------
    # Links
    # -------------------------------------------------------------------------

    def _insert_link(self, db, link: PatternLink) -> None:
        if link.from_id == link.to_id:
            raise ValidationError("A pattern cannot link to itself", id=link.from_id)
        for pid in (link.from_id, link.to_id):
            exists = db.execute(
                "SELECT 1 FROM patterns WHERE namespace=? AND id=?", (link.namespace, pid)
            ).fetchone()
            if not exists:
                raise NotFoundError("Linked pattern not found", namespace=link.namespace, id=pid)
        db.execute(
            "INSERT OR IGNORE INTO pattern_links (namespace, from_id, to_id, relation, created_at) VALUES (?,?,?,?,?)",
            (link.namespace, link.from_id, link.to_id, link.relation, to_iso(link.created_at) or now_iso())
        )

    def put_link(self, link: PatternLink) -> PatternLink:
        """Create a typed link. Re-adding an existing link is a no-op."""
        if link.relation not in RELATIONS:
            raise ValidationError(f"relation must be one of {RELATIONS}", relation=link.relation)
        with self.transaction() as db:
            self._insert_link(db, link)
        return link

    def get_links(self, namespace: str, pattern_id: Optional[str] = None,
                  relation: Optional[str] = None) -> List[PatternLink]:
        """Links in a namespace, optionally touching one pattern (either end)."""
        sql = "SELECT * FROM pattern_links WHERE namespace=?"
        params = [namespace]
        if pattern_id:
            sql += " AND (from_id=? OR to_id=?)"
            params.extend([pattern_id, pattern_id])
        if relation:
            sql += " AND relation=?"
            params.append(relation)
        sql += " ORDER BY from_id, to_id, relation"
        return [PatternLink.from_row(r) for r in self._query(sql, params)]

    # -------------------------------------------------------------------------
    # Trajectories
    # -------------------------------------------------------------------------

    def put_trajectory(self, t: TaskTrajectory) -> TaskTrajectory:
        """Record a trajectory once. Re-recording the same id returns the stored row."""
        if not t.id or not t.namespace:
            raise ValidationError("Trajectory id and namespace are required")
        if not t.query_text or not t.query_text.strip():
            raise ValidationError("Trajectory query_text is empty", id=t.id)
        if t.verdict not in VERDICTS:
            raise ValidationError(f"verdict must be one of {VERDICTS}", id=t.id, verdict=t.verdict)
        if not 0.0 <= t.verdict_confidence <= 1.0:
            raise ValidationError("verdict_confidence must be in [0, 1]", id=t.id)

        with self.transaction() as db:
            db.execute(
                """INSERT OR IGNORE INTO trajectories (id, namespace, query_text, used_pattern_ids,
                   verdict, verdict_confidence, timestamp, consolidated, rationale, output, query_embedding)
                   VALUES (?,?,?,?,?,?,?,?,?,?,?)""",
                (t.id, t.namespace, t.query_text, json.dumps(list(t.used_pattern_ids)),
                 t.verdict, float(t.verdict_confidence), to_iso(t.timestamp) or now_iso(),
                 int(t.consolidated), t.rationale, t.output or "", embed_to_blob(t.query_embedding))
            )
            row = db.execute(
                "SELECT * FROM trajectories WHERE namespace=? AND id=?", (t.namespace, t.id)
            ).fetchone()
        return TaskTrajectory.from_row(row)

    def get_trajectory(self, namespace: str, trajectory_id: str) -> TaskTrajectory:
        row = self._query_one(
            "SELECT * FROM trajectories WHERE namespace=? AND id=?", (namespace, trajectory_id)
        )
        if row is None:
            raise NotFoundError("Trajectory not found", namespace=namespace, id=trajectory_id)
        return TaskTrajectory.from_row(row)

    def list_trajectories(self, namespace: Optional[str] = None, since_seq: Optional[int] = None,
                          limit: Optional[int] = None,
                          unconsolidated_only: bool = False) -> List[TaskTrajectory]:
        """Trajectories in insertion order, strictly after ``since_seq``."""
        sql = "SELECT * FROM trajectories WHERE 1=1"
        params = []
        if namespace:
            sql += " AND namespace=?"
            params.append(namespace)
        if since_seq is not None:
            sql += " AND seq > ?"
            params.append(int(since_seq))
        if unconsolidated_only:
            sql += " AND consolidated=0"
        sql += " ORDER BY seq"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return [TaskTrajectory.from_row(r) for r in self._query(sql, params)]

    def trajectories_using(self, namespace: str, pattern_id: str) -> List[TaskTrajectory]:
        """Trajectories whose used_pattern_ids include pattern_id."""
        rows = self._query(
            "SELECT * FROM trajectories WHERE namespace=? AND used_pattern_ids LIKE ? ORDER BY seq",
            (namespace, f'%{json.dumps(pattern_id)}%')
        )
        # LIKE is a prefilter; ids containing % or _ need the exact check
        trajectories = [TaskTrajectory.from_row(r) for r in rows]
        return [t for t in trajectories if pattern_id in t.used_pattern_ids]

    def mark_consolidated(self, namespace: str, up_to_seq: Optional[int] = None) -> int:
        """Flag trajectories as seen by consolidation. Returns rows changed."""
        sql = "UPDATE trajectories SET consolidated=1 WHERE namespace=? AND consolidated=0"
        params = [namespace]
        if up_to_seq is not None:
            sql += " AND seq <= ?"
            params.append(int(up_to_seq))
        with self.transaction() as db:
            return db.execute(sql, params).rowcount

    # -------------------------------------------------------------------------
    # Consolidation lease
    # -------------------------------------------------------------------------

    def try_acquire_consolidation(self, namespace: str, holder: str,
                                  lease_seconds: float = 3600.0, now=None) -> bool:
        """Take the namespace's consolidation lease unless a live one exists.

        Expired leases (a crashed pass) are taken over.
        """
        now = parse_ts(now) or utcnow()
        expires = now + timedelta(seconds=lease_seconds)
        with self.transaction() as db:
            row = db.execute(
                "SELECT holder, expires_at FROM consolidation_leases WHERE namespace=?", (namespace,)
            ).fetchone()
            if row is not None and row["holder"] != holder and parse_ts(row["expires_at"]) > now:
                return False
            db.execute(
                "INSERT OR REPLACE INTO consolidation_leases (namespace, holder, acquired_at, expires_at) VALUES (?,?,?,?)",
                (namespace, holder, now.isoformat(), expires.isoformat())
            )
        return True

    def consolidation_holder(self, namespace: str) -> Optional[str]:
        row = self._query_one(
            "SELECT holder FROM consolidation_leases WHERE namespace=?", (namespace,)
        )
        return row["holder"] if row else None

    def release_consolidation(self, namespace: str, holder: str) -> bool:
        with self.transaction() as db:
            cur = db.execute(
                "DELETE FROM consolidation_leases WHERE namespace=? AND holder=?", (namespace, holder)
            )
            return cur.rowcount > 0

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    def stats(self, namespace: Optional[str] = None) -> dict:
        """Counts and averages for one namespace, or the whole store."""
        where, params = ("WHERE namespace=?", [namespace]) if namespace else ("", [])

        p = self._query_one(
            f"""SELECT COUNT(*) AS n, AVG(confidence) AS avg_conf,
                       SUM(usage_count) AS usage, SUM(contradiction_flagged) AS flagged,
                       SUM(CASE WHEN usage_count = 0 THEN 1 ELSE 0 END) AS unused
                FROM patterns {where}""",
            params
        )
        links = self._query_one(f"SELECT COUNT(*) AS n FROM pattern_links {where}", params)
        verdicts = {
            r["verdict"]: r["n"]
            for r in self._query(
                f"SELECT verdict, COUNT(*) AS n FROM trajectories {where} GROUP BY verdict", params
            )
        }
        pending = self._query_one(
            f"SELECT COUNT(*) AS n FROM trajectories {where + (' AND' if where else 'WHERE')} consolidated=0",
            params
        )
        namespaces = [r["namespace"] for r in self._query(
            "SELECT DISTINCT namespace FROM patterns UNION SELECT DISTINCT namespace FROM trajectories ORDER BY 1"
        )]

        return {
            "namespace": namespace,
            "namespaces": namespaces if namespace is None else [namespace],
            "patterns": p["n"],
            "avg_confidence": round(p["avg_conf"], 3) if p["avg_conf"] is not None else None,
            "total_usage": p["usage"] or 0,
            "unused_patterns": p["unused"] or 0,
            "flagged_patterns": p["flagged"] or 0,
            "links": links["n"],
            "trajectories": sum(verdicts.values()),
            "by_verdict": {v: verdicts.get(v, 0) for v in VERDICTS},
            "pending_consolidation": pending["n"],
            "embedding_dim": self.embedding_dim,
        }
