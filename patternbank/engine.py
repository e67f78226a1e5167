"""MemoryEngine: the per-task entry point for orchestration callers.

    engine = MemoryEngine(PatternStore(path), HashEmbedder(), judge=MarkerJudge())
    hits = engine.retrieve("backend", "add pagination to the users endpoint")
    ... run the task with hits ...
    engine.record(TaskTrajectory(id=..., namespace="backend", query_text=...,
                                 used_pattern_ids=[h.id for h in hits], output=transcript))
    engine.consolidate_if_due("backend", completed_tasks)

Memory is an optimization, not a dependency of the task: provider and
store failures (sqlite3.Error included) are logged and reported back, never
raised out of retrieve() or record(). Malformed input (ValidationError)
still raises.
"""

import sqlite3
from dataclasses import dataclass, field, replace
from typing import Callable, Iterable, List, Optional

from .config import EngineConfig
from .db.schema import TaskTrajectory
from .errors import ConsolidationSkipped, EmbeddingError, PatternBankError, ValidationError
from .judge import Judge, Judgment
from .logging_config import get_logger
from .memory.consolidate import Consolidator, ConsolidationReport
from .memory.distill import Distiller, DistillResult, scrub_pii
from .memory.embeddings import Embedder, embed_checked
from .memory.reinforce import Reinforcer, ReinforceReport
from .memory.retrieval import Retriever, ScoredPattern
from .memory.store import PatternStore

log = get_logger("patternbank.engine")


@dataclass
class RecordReport:
    """What record() did for one trajectory."""
    trajectory: Optional[TaskTrajectory] = None
    judgment: Optional[Judgment] = None
    reinforce: Optional[ReinforceReport] = None
    distill: Optional[DistillResult] = None
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "trajectory": self.trajectory.to_dict() if self.trajectory else None,
            "judgment": self.judgment.to_dict() if self.judgment else None,
            "reinforce": self.reinforce.to_dict() if self.reinforce else None,
            "distill": self.distill.to_dict() if self.distill else None,
            "errors": self.errors,
        }


class MemoryEngine:
    """Wires the five components around one store and one configuration."""

    def __init__(self, store: PatternStore, embedder: Embedder, judge: Optional[Judge] = None,
                 config: Optional[EngineConfig] = None,
                 scrub: Callable[[str], str] = scrub_pii):
        self.store = store
        self.embedder = embedder
        self.judge = judge
        self.config = config or EngineConfig()
        self.retriever = Retriever(store, self.config)
        self.reinforcer = Reinforcer(store, self.config)
        self.distiller = Distiller(store, embedder, self.config, scrub=scrub)
        self.consolidator = Consolidator(store, self.config)

    def retrieve(self, namespace: str, query_text: str, k: Optional[int] = None,
                 domain: Optional[str] = None, now=None) -> List[ScoredPattern]:
        """Ranked patterns for a query; empty when the embedding provider fails."""
        try:
            query = embed_checked(self.embedder, query_text, namespace, self.config.embedding_dim)
        except EmbeddingError as e:
            log.warning("Retrieval in '%s' returned nothing: %s", namespace, e)
            return []
        try:
            return self.retriever.retrieve(namespace, query, k=k, domain=domain, now=now)
        except sqlite3.Error as e:
            log.warning("Retrieval in '%s' failed on the store: %s", namespace, e)
            return []

    def record(
        self,
        trajectory: TaskTrajectory,
        rationale: Optional[str] = None,
        content: Optional[str] = None,
        domain: Optional[str] = None,
        tags: Iterable[str] = (),
        now=None,
    ) -> RecordReport:
        """Store a finished trajectory, then reinforce and distill from it.

        A trajectory without a verdict is judged first. If no verdict can
        be had, nothing is stored and the reason is in ``errors``.
        """
        report = RecordReport()

        if not trajectory.verdict:
            if self.judge is None:
                raise ValidationError("Trajectory has no verdict and no judge is configured",
                                      id=trajectory.id)
            try:
                report.judgment = self.judge.judge(trajectory)
            except PatternBankError as e:
                log.warning("Judge failed for trajectory %s: %s", trajectory.id, e)
                report.errors.append(f"judge: {e}")
                return report
            trajectory = replace(
                trajectory,
                verdict=report.judgment.verdict,
                verdict_confidence=report.judgment.confidence,
                rationale=trajectory.rationale or report.judgment.rationale,
            )

        if trajectory.query_embedding is None:
            try:
                trajectory = replace(trajectory, query_embedding=embed_checked(
                    self.embedder, trajectory.query_text, trajectory.namespace, self.config.embedding_dim))
            except EmbeddingError as e:
                log.debug("Storing trajectory %s without query embedding: %s", trajectory.id, e)

        try:
            report.trajectory = self.store.put_trajectory(trajectory)
        except sqlite3.Error as e:
            log.warning("Could not store trajectory %s: %s", trajectory.id, e)
            report.errors.append(f"store: {e}")
            return report

        try:
            report.reinforce = self.reinforcer.reinforce(report.trajectory, now=now)
        except (PatternBankError, sqlite3.Error) as e:
            log.warning("Reinforcement failed for trajectory %s: %s", trajectory.id, e)
            report.errors.append(f"reinforce: {e}")

        try:
            report.distill = self.distiller.distill(
                report.trajectory, rationale=rationale, content=content, domain=domain, tags=tags)
        except (PatternBankError, sqlite3.Error) as e:
            log.warning("Distillation failed for trajectory %s: %s", trajectory.id, e)
            report.errors.append(f"distill: {e}")

        return report

    def consolidate(self, namespace: str, now=None, dry_run: bool = False) -> ConsolidationReport:
        """Run a pass now. Raises ConsolidationSkipped if one is already running."""
        return self.consolidator.run(namespace, now=now, dry_run=dry_run)

    def consolidate_if_due(self, namespace: str, completed_tasks: int,
                           now=None) -> Optional[ConsolidationReport]:
        """Run a pass when the caller's task counter hits the cadence.

        Returns None when not due or when another pass holds the namespace.
        """
        if not self.consolidator.due(completed_tasks):
            return None
        try:
            return self.consolidator.run(namespace, now=now)
        except ConsolidationSkipped as e:
            log.info("%s; will retry at the next threshold", e)
            return None
