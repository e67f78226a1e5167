"""Distillation: turn a judged trajectory into a new pattern.

Only successes and confident partials are distilled. Candidate text is
always scrubbed before it is embedded or stored, and nothing is written
unless the embedding is usable.
"""

import hashlib
import re
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from ..config import EngineConfig
from ..db.schema import Pattern, PatternLink, TaskTrajectory
from ..errors import NotFoundError, ValidationError
from ..logging_config import get_logger
from .embeddings import embed_checked

log = get_logger("patternbank.distill")

MAX_CONTENT_CHARS = 2000

_PII_RULES = [
    (re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+"), "[EMAIL]"),
    (re.compile(r"\b(?:sk|pk|ghp|gho|xox[abpr])[-_][A-Za-z0-9_-]{12,}\b"), "[SECRET]"),
    (re.compile(r"(?i)\b(password|passwd|secret|token|api[_-]?key)\s*[:=]\s*\S+"), r"\1=[SECRET]"),
    (re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b"), "[IP]"),
    (re.compile(r"(?<!\w)(?:\+\d{1,3}[\s.-]?)?\(?\d{3}\)?[\s.-]\d{3}[\s.-]\d{4}\b"), "[PHONE]"),
    (re.compile(r"(/home/|/Users/)[^/\s]+"), r"\1[USER]"),
]


def scrub_pii(text: str) -> str:
    """Redact emails, credentials, IPv4 addresses, phone numbers and home dirs."""
    for pattern, replacement in _PII_RULES:
        text = pattern.sub(replacement, text)
    return text


def _slug(text: str) -> str:
    """Create kebab-case slug."""
    s = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return s[:50].rstrip("-")


def make_pattern_id(content: str, seed: str) -> str:
    """Stable id: readable slug of the content plus a digest of seed."""
    digest = hashlib.sha1(seed.encode("utf-8")).hexdigest()[:8]
    slug = _slug(content)
    return f"{slug}-{digest}" if slug else f"pattern-{digest}"


@dataclass
class DistillResult:
    """status: added | exists | skipped"""
    status: str
    pattern: Optional[Pattern] = None
    reason: str = ""

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "pattern": self.pattern.to_dict() if self.pattern else None,
            "reason": self.reason,
        }


class Distiller:
    """Synthesizes patterns from successful trajectories."""

    def __init__(self, store, embedder, config: Optional[EngineConfig] = None,
                 scrub: Callable[[str], str] = scrub_pii):
        self.store = store
        self.embedder = embedder
        self.config = config or EngineConfig()
        self.scrub = scrub

    def should_distill(self, trajectory: TaskTrajectory) -> bool:
        if trajectory.verdict == "success":
            return True
        return (trajectory.verdict == "partial"
                and trajectory.verdict_confidence >= self.config.distill_partial_min_confidence)

    def compose(self, trajectory: TaskTrajectory, rationale: Optional[str] = None) -> str:
        """Default pattern text for a trajectory."""
        text = f"Task: {trajectory.query_text.strip()}"
        rationale = (rationale or trajectory.rationale or "").strip()
        if rationale:
            lead = "Approach that worked" if trajectory.verdict == "success" else "Approach that partly worked"
            text += f"\n{lead}: {rationale}"
        return text

    def distill(
        self,
        trajectory: TaskTrajectory,
        rationale: Optional[str] = None,
        content: Optional[str] = None,
        domain: Optional[str] = None,
        tags: Iterable[str] = (),
    ) -> DistillResult:
        """Create a pattern from a trajectory, or explain why not.

        Raises ValidationError when the scrubbed content is empty and
        EmbeddingError when the provider fails; neither writes anything.
        """
        if not self.should_distill(trajectory):
            return DistillResult(
                "skipped",
                reason=f"verdict {trajectory.verdict} "
                       f"(confidence {trajectory.verdict_confidence:.2f}) is not distilled",
            )

        raw = content if content is not None else self.compose(trajectory, rationale)
        text = self.scrub(raw or "").strip()[:MAX_CONTENT_CHARS]
        if not text:
            raise ValidationError("Distilled content is empty", trajectory=trajectory.id)

        ns = trajectory.namespace
        pattern_id = make_pattern_id(text, f"{ns}:{trajectory.id}")
        if self.store.has_pattern(ns, pattern_id):
            return DistillResult("exists", pattern=self.store.get_pattern(ns, pattern_id),
                                 reason="trajectory already distilled")

        embedding = embed_checked(self.embedder, text, ns, self.config.embedding_dim)

        pattern = Pattern(
            id=pattern_id,
            namespace=ns,
            content=text,
            embedding=embedding,
            domain=domain or "",
            tags=sorted(set(tags) | {"distilled", trajectory.verdict}),
            confidence=self.config.initial_confidence,
        )

        used = [pid for pid in dict.fromkeys(trajectory.used_pattern_ids) if pid != pattern_id]
        for _ in range(2):
            links = [PatternLink(ns, pattern_id, pid, "related_to")
                     for pid in used if self.store.has_pattern(ns, pid)]
            try:
                stored = self.store.put_pattern(pattern, links=links)
                break
            except NotFoundError as e:
                # A used pattern was deleted between the check and the write
                log.debug("Dropping stale link while distilling %s: %s", pattern_id, e)
        else:
            stored = self.store.put_pattern(pattern)

        log.info("Distilled pattern %s from trajectory %s", stored.id, trajectory.id)
        return DistillResult("added", pattern=stored)
