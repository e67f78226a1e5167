"""Consolidation: periodic maintenance of one namespace.

Three phases, in order, within a single pass:
1. Deduplicate: merge pairs with cosine >= dedup_threshold into the
   higher-confidence member (ties: higher usage, then smaller id)
2. Contradictions: flag pairs with contradiction_threshold <= cosine <
   dedup_threshold whose trajectories show opposite verdicts for similar
   queries. Flagged patterns are never deleted or demoted here
3. Prune: delete patterns with low confidence AND at most one use AND
   older than prune_age_days

Only one pass per namespace runs at a time (a lease row in the store).
The pass never holds a global lock; each merge or delete is atomic on
its own rows, so retrieval and reinforcement keep running alongside it.
"""

import os
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

from ..config import EngineConfig
from ..db.schema import Pattern, parse_ts, utcnow
from ..errors import ConflictError, ConsolidationSkipped, NotFoundError
from ..logging_config import get_logger
from .embeddings import cosine, similarity_matrix

log = get_logger("patternbank.consolidate")


@dataclass
class ConsolidationReport:
    """Summary of a single consolidation pass."""
    namespace: str
    merged: List[dict] = field(default_factory=list)    # {"winner", "loser", "similarity"}
    flagged: List[dict] = field(default_factory=list)   # {"a", "b", "similarity"}
    pruned: List[str] = field(default_factory=list)
    trajectories_marked: int = 0
    conflicts: int = 0
    dry_run: bool = False
    duration_ms: float = 0.0

    def to_dict(self) -> dict:
        return {
            "namespace": self.namespace,
            "merged": self.merged,
            "flagged": self.flagged,
            "pruned": self.pruned,
            "trajectories_marked": self.trajectories_marked,
            "conflicts": self.conflicts,
            "dry_run": self.dry_run,
            "duration_ms": round(self.duration_ms, 1),
        }


def choose_winner(a: Pattern, b: Pattern) -> tuple:
    """(winner, loser): higher confidence, then higher usage, then smaller id."""
    ka = (-a.confidence, -a.usage_count, a.id)
    kb = (-b.confidence, -b.usage_count, b.id)
    return (a, b) if ka <= kb else (b, a)


def _normalize_query(text: str) -> str:
    return " ".join(text.lower().split())


def _similar_pairs(patterns: List[Pattern], low: float, high: Optional[float] = None) -> List[tuple]:
    """(similarity, id_a, id_b) for pairs with low <= sim (< high), id_a < id_b.

    Patterns are compared only against others of the same dimension.
    Sorted by descending similarity, then ids.
    """
    by_dim: Dict[int, List[Pattern]] = {}
    for p in patterns:
        by_dim.setdefault(len(p.embedding), []).append(p)

    pairs = []
    for group in by_dim.values():
        if len(group) < 2:
            continue
        group = sorted(group, key=lambda p: p.id)
        sims = similarity_matrix([p.embedding for p in group])
        n = len(group)
        for i in range(n):
            for j in range(i + 1, n):
                sim = float(sims[i, j])
                if sim >= low and (high is None or sim < high):
                    pairs.append((sim, group[i].id, group[j].id))
    pairs.sort(key=lambda x: (-x[0], x[1], x[2]))
    return pairs


class Consolidator:
    """Dedup, contradiction flagging and pruning for one namespace at a time."""

    def __init__(self, store, config: Optional[EngineConfig] = None):
        self.store = store
        self.config = config or EngineConfig()

    def due(self, completed_tasks: int) -> bool:
        """True when the caller-owned task counter hits the cadence."""
        return completed_tasks > 0 and completed_tasks % self.config.consolidate_every == 0

    def run(self, namespace: str, now=None, holder: Optional[str] = None,
            dry_run: bool = False) -> ConsolidationReport:
        """Run one pass. Raises ConsolidationSkipped if another pass holds the namespace.

        With dry_run the pass computes what it would do without writing
        (the lease is still taken so previews never race a real pass).
        """
        now = parse_ts(now) or utcnow()
        holder = holder or f"{os.getpid()}:{threading.get_ident()}:{uuid.uuid4().hex[:8]}"
        if not self.store.try_acquire_consolidation(
                namespace, holder, self.config.consolidation_lease_seconds, now=now):
            current = self.store.consolidation_holder(namespace) or ""
            log.info("Consolidation of '%s' skipped; held by %s", namespace, current)
            raise ConsolidationSkipped(namespace, current)

        started = time.monotonic()
        report = ConsolidationReport(namespace=namespace, dry_run=dry_run)
        try:
            trajectories = self.store.list_trajectories(namespace)
            watermark = trajectories[-1].seq if trajectories else None

            working = {p.id: p for p in self.store.get_candidates(namespace)}
            aliases = self._dedup(namespace, working, report, dry_run)
            self._flag_contradictions(namespace, working, trajectories, aliases, report, dry_run)
            self._prune(namespace, working, now, report, dry_run)

            if watermark is not None and not dry_run:
                report.trajectories_marked = self.store.mark_consolidated(namespace, up_to_seq=watermark)
        finally:
            self.store.release_consolidation(namespace, holder)
            report.duration_ms = (time.monotonic() - started) * 1000

        log.info("Consolidated '%s': %d merged, %d flagged, %d pruned%s",
                 namespace, len(report.merged), len(report.flagged), len(report.pruned),
                 " (dry run)" if dry_run else "")
        return report

    # -------------------------------------------------------------------------
    # Phase 1
    # -------------------------------------------------------------------------

    def _dedup(self, namespace: str, working: Dict[str, Pattern],
               report: ConsolidationReport, dry_run: bool) -> Dict[str, str]:
        """Merge near-duplicates. Returns loser id -> surviving id."""
        aliases = {}
        for sim, a_id, b_id in _similar_pairs(list(working.values()), self.config.dedup_threshold):
            if a_id not in working or b_id not in working:
                continue  # merged away earlier in this pass
            winner, loser = choose_winner(working[a_id], working[b_id])

            if dry_run:
                merged = replace(
                    winner,
                    usage_count=winner.usage_count + loser.usage_count,
                    success_count=winner.success_count + loser.success_count,
                    confidence=max(winner.confidence, loser.confidence),
                    contradiction_flagged=winner.contradiction_flagged or loser.contradiction_flagged,
                )
            else:
                try:
                    merged = self.store.merge_patterns(namespace, winner.id, loser.id)
                except NotFoundError:
                    # Deleted concurrently; drop whichever is gone
                    for pid in (winner.id, loser.id):
                        if not self.store.has_pattern(namespace, pid):
                            working.pop(pid, None)
                    report.conflicts += 1
                    continue

            working[winner.id] = merged
            del working[loser.id]
            aliases[loser.id] = winner.id
            report.merged.append({"winner": winner.id, "loser": loser.id, "similarity": round(sim, 4)})
        return aliases

    # -------------------------------------------------------------------------
    # Phase 2
    # -------------------------------------------------------------------------

    def _queries_similar(self, x, y) -> bool:
        ex, ey = x.query_embedding, y.query_embedding
        if ex and ey and len(ex) == len(ey):
            return cosine(ex, ey) >= self.config.contradiction_threshold
        return _normalize_query(x.query_text) == _normalize_query(y.query_text)

    def _opposed(self, only_a: list, only_b: list) -> bool:
        for x in only_a:
            for y in only_b:
                if {x.verdict, y.verdict} == {"success", "failure"} and self._queries_similar(x, y):
                    return True
        return False

    def _flag_contradictions(self, namespace: str, working: Dict[str, Pattern], trajectories: list,
                             aliases: Dict[str, str], report: ConsolidationReport, dry_run: bool) -> None:
        def resolve(pid):
            while pid in aliases:
                pid = aliases[pid]
            return pid

        used = {}
        by_pattern: Dict[str, list] = {}
        for t in trajectories:
            used[t.id] = {resolve(pid) for pid in t.used_pattern_ids}
            for pid in used[t.id]:
                by_pattern.setdefault(pid, []).append(t)

        pairs = _similar_pairs(list(working.values()),
                               self.config.contradiction_threshold, self.config.dedup_threshold)
        to_flag = set()
        for sim, a_id, b_id in pairs:
            only_a = [t for t in by_pattern.get(a_id, []) if b_id not in used[t.id]]
            only_b = [t for t in by_pattern.get(b_id, []) if a_id not in used[t.id]]
            if only_a and only_b and self._opposed(only_a, only_b):
                report.flagged.append({"a": a_id, "b": b_id, "similarity": round(sim, 4)})
                to_flag.update((a_id, b_id))

        if not to_flag:
            return
        if dry_run:
            for pid in to_flag:
                working[pid] = replace(working[pid], contradiction_flagged=True)
            return

        self.store.flag_contradiction(namespace, to_flag)
        for pid in to_flag:
            try:
                working[pid] = self.store.get_pattern(namespace, pid)
            except NotFoundError:
                working.pop(pid, None)

    # -------------------------------------------------------------------------
    # Phase 3
    # -------------------------------------------------------------------------

    def prunable(self, p: Pattern, now) -> bool:
        """All three conditions must hold."""
        age_days = (now - parse_ts(p.created_at)).total_seconds() / 86400.0
        return (p.confidence <= self.config.prune_confidence
                and p.usage_count <= self.config.prune_max_usage
                and age_days > self.config.prune_age_days)

    def _prune(self, namespace: str, working: Dict[str, Pattern], now,
               report: ConsolidationReport, dry_run: bool) -> None:
        for pid in sorted(working):
            p = working[pid]
            if not self.prunable(p, now):
                continue
            if not dry_run:
                try:
                    self.store.delete_pattern(namespace, pid, expected_version=p.version)
                except ConflictError:
                    # Reinforced while we were deciding; re-evaluate next pass
                    report.conflicts += 1
                    continue
                except NotFoundError:
                    continue
            del working[pid]
            report.pruned.append(pid)
