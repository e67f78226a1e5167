"""Reinforcement: learn pattern confidence from task outcomes.

Update rule, applied independently to each used pattern:
    success -> min(confidence * 1.20, 0.95), usage += 1, success += 1
    failure -> max(confidence * 0.85, 0.05), usage += 1
    partial -> confidence unchanged,         usage += 1

Each (trajectory, pattern) pair is applied at most once; the store keeps
a reinforcement record and rejects repeats.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from ..config import EngineConfig
from ..db.schema import TaskTrajectory, VERDICTS
from ..errors import AlreadyReinforcedError, ConflictError, NotFoundError, ValidationError
from ..logging_config import get_logger

log = get_logger("patternbank.reinforce")


def next_confidence(confidence: float, verdict: str, config: Optional[EngineConfig] = None) -> float:
    """Apply the update rule once. Result stays within the configured bounds."""
    config = config or EngineConfig()
    if verdict == "success":
        new = min(confidence * config.success_multiplier, config.confidence_ceiling)
    elif verdict == "failure":
        new = max(confidence * config.failure_multiplier, config.confidence_floor)
    elif verdict == "partial":
        new = confidence
    else:
        raise ValidationError(f"verdict must be one of {VERDICTS}", verdict=verdict)
    return min(max(new, config.confidence_floor), config.confidence_ceiling)


@dataclass
class ReinforceReport:
    """Outcome of one reinforce() call, per pattern id."""
    trajectory_id: str
    verdict: str
    updated: dict = field(default_factory=dict)   # id -> {"from": old, "to": new}
    skipped: List[str] = field(default_factory=list)   # already applied
    missing: List[str] = field(default_factory=list)   # deleted since retrieval

    def to_dict(self) -> dict:
        return {
            "trajectory_id": self.trajectory_id,
            "verdict": self.verdict,
            "updated": self.updated,
            "skipped": self.skipped,
            "missing": self.missing,
        }


class Reinforcer:
    """Applies the confidence update rule to the patterns a trajectory used."""

    def __init__(self, store, config: Optional[EngineConfig] = None):
        self.store = store
        self.config = config or EngineConfig()

    def reinforce(self, trajectory: TaskTrajectory, now=None) -> ReinforceReport:
        """Update every pattern in ``trajectory.used_pattern_ids``.

        Patterns deleted since retrieval are ignored. Pairs already applied
        are skipped, so calling this twice for a trajectory is a no-op the
        second time. ConflictError is retried up to max_conflict_retries
        times per pattern, then raised.
        """
        if trajectory.verdict not in VERDICTS:
            raise ValidationError(f"verdict must be one of {VERDICTS}",
                                  id=trajectory.id, verdict=trajectory.verdict)

        report = ReinforceReport(trajectory_id=trajectory.id, verdict=trajectory.verdict)
        seen = set()
        for pattern_id in trajectory.used_pattern_ids:
            if pattern_id in seen:
                continue
            seen.add(pattern_id)
            try:
                old, new = self._apply(trajectory, pattern_id, now)
                report.updated[pattern_id] = {"from": round(old, 6), "to": round(new, 6)}
            except NotFoundError:
                log.debug("Pattern %s gone before reinforcement; ignoring", pattern_id)
                report.missing.append(pattern_id)
            except AlreadyReinforcedError:
                log.debug("Trajectory %s already reinforced %s", trajectory.id, pattern_id)
                report.skipped.append(pattern_id)

        if report.updated:
            log.info("Reinforced %d patterns (%s) from trajectory %s",
                     len(report.updated), trajectory.verdict, trajectory.id)
        return report

    def _apply(self, trajectory: TaskTrajectory, pattern_id: str, now) -> tuple:
        verdict = trajectory.verdict
        success_delta = 1 if verdict == "success" else 0
        ns = trajectory.namespace

        attempts = self.config.max_conflict_retries
        for attempt in range(1, attempts + 1):
            with self.store.row_lock(ns, pattern_id):
                current = self.store.get_pattern(ns, pattern_id)
                new = next_confidence(current.confidence, verdict, self.config)
                try:
                    self.store.update_confidence(
                        ns, pattern_id, new,
                        usage_delta=1, success_delta=success_delta,
                        expected_version=current.version,
                        trajectory_id=trajectory.id,
                        used_at=now,
                    )
                    return current.confidence, new
                except ConflictError:
                    if attempt == attempts:
                        raise
                    log.debug("Conflict reinforcing %s (attempt %d/%d)", pattern_id, attempt, attempts)
