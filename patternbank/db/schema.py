"""Data models for patternbank.

Core entities:
- Pattern: a reusable solution fragment with a learned confidence
- PatternLink: typed, directed relationship between two patterns
- TaskTrajectory: one task execution and its judged outcome
"""

import json
import struct
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

# Confidence bounds. Nothing ever persists a confidence outside them.
CONFIDENCE_FLOOR = 0.05
CONFIDENCE_CEILING = 0.95
INITIAL_CONFIDENCE = 0.5

VERDICTS = ("success", "failure", "partial")
RELATIONS = ("requires", "causes", "enhances", "related_to")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utcnow().isoformat()


def parse_ts(value) -> Optional[datetime]:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def to_iso(value) -> Optional[str]:
    ts = parse_ts(value)
    return ts.isoformat() if ts else None


def embed_to_blob(embedding) -> Optional[bytes]:
    """Serialize an embedding to a float32 BLOB."""
    if embedding is None:
        return None
    return struct.pack(f"{len(embedding)}f", *embedding)


def blob_to_embed(blob: Optional[bytes]) -> Optional[tuple]:
    """Deserialize a BLOB back to an embedding tuple."""
    if blob is None:
        return None
    count = len(blob) // 4
    return struct.unpack(f"{count}f", blob)


@dataclass
class Pattern:
    """A learned, reusable solution fragment.

    Patterns earn their place through reuse. Confidence moves only through
    reinforcement or a consolidation merge; ``version`` is bumped by the
    store on every mutation and drives optimistic concurrency.
    """
    id: str
    namespace: str
    content: str
    embedding: tuple = ()
    domain: str = ""
    tags: list = field(default_factory=list)

    confidence: float = INITIAL_CONFIDENCE
    usage_count: int = 0
    success_count: int = 0

    created_at: str = field(default_factory=now_iso)
    last_used_at: Optional[str] = None
    contradiction_flagged: bool = False
    version: int = 0

    @property
    def last_activity(self) -> str:
        """Timestamp recency is measured from."""
        return self.last_used_at or self.created_at

    def to_dict(self, include_embedding: bool = False) -> dict:
        d = {
            "id": self.id,
            "namespace": self.namespace,
            "content": self.content,
            "domain": self.domain,
            "tags": list(self.tags),
            "confidence": round(self.confidence, 6),
            "usage_count": self.usage_count,
            "success_count": self.success_count,
            "created_at": self.created_at,
            "last_used_at": self.last_used_at,
            "contradiction_flagged": self.contradiction_flagged,
            "version": self.version,
        }
        if include_embedding:
            d["embedding"] = list(self.embedding)
        return d

    @classmethod
    def from_row(cls, row) -> "Pattern":
        return cls(
            id=row["id"],
            namespace=row["namespace"],
            content=row["content"],
            embedding=blob_to_embed(row["embedding"]) or (),
            domain=row["domain"] or "",
            tags=json.loads(row["tags"] or "[]"),
            confidence=row["confidence"],
            usage_count=row["usage_count"],
            success_count=row["success_count"],
            created_at=row["created_at"],
            last_used_at=row["last_used_at"],
            contradiction_flagged=bool(row["contradiction_flagged"]),
            version=row["version"],
        )


@dataclass
class PatternLink:
    """Relationship between two patterns in the same namespace.

    Advisory metadata for downstream synthesis; never used in scoring.
    Types: requires, causes, enhances, related_to
    """
    namespace: str
    from_id: str
    to_id: str
    relation: str = "related_to"
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict:
        return {
            "namespace": self.namespace,
            "from_id": self.from_id,
            "to_id": self.to_id,
            "relation": self.relation,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, row) -> "PatternLink":
        return cls(
            namespace=row["namespace"],
            from_id=row["from_id"],
            to_id=row["to_id"],
            relation=row["relation"],
            created_at=row["created_at"],
        )


@dataclass
class TaskTrajectory:
    """Record of one task execution.

    Immutable once stored, except for the ``consolidated`` housekeeping flag.
    ``seq`` is assigned by the store.
    """
    id: str
    namespace: str
    query_text: str
    used_pattern_ids: list = field(default_factory=list)
    verdict: Optional[str] = None
    verdict_confidence: float = 0.0
    timestamp: str = field(default_factory=now_iso)
    consolidated: bool = False

    rationale: Optional[str] = None
    output: str = ""
    query_embedding: Optional[tuple] = None
    seq: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "namespace": self.namespace,
            "query_text": self.query_text,
            "used_pattern_ids": list(self.used_pattern_ids),
            "verdict": self.verdict,
            "verdict_confidence": self.verdict_confidence,
            "timestamp": self.timestamp,
            "consolidated": self.consolidated,
            "rationale": self.rationale,
            "seq": self.seq,
        }

    @classmethod
    def from_row(cls, row) -> "TaskTrajectory":
        return cls(
            id=row["id"],
            namespace=row["namespace"],
            query_text=row["query_text"],
            used_pattern_ids=json.loads(row["used_pattern_ids"] or "[]"),
            verdict=row["verdict"],
            verdict_confidence=row["verdict_confidence"],
            timestamp=row["timestamp"],
            consolidated=bool(row["consolidated"]),
            rationale=row["rationale"],
            output=row["output"] or "",
            query_embedding=blob_to_embed(row["query_embedding"]),
            seq=row["seq"],
        )
