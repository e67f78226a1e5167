"""Verdicts for completed tasks.

The engine consumes a Judge; it never decides outcomes itself. MarkerJudge
is the local heuristic: it reads the outcome markers agents already emit
in their output.

    DELIVERED: <what was done>    -> success
    BLOCKED: <why>                -> failure
    PARTIAL: <what is left>       -> partial (also when both of the above appear)
    INSIGHT: {"content": "..."}   -> rationale, when present
"""

import json
import re
from dataclasses import dataclass
from typing import Optional, Protocol

from .db.schema import TaskTrajectory
from .errors import JudgeError

MARKER_CONFIDENCE = 0.8
MIXED_CONFIDENCE = 0.6


@dataclass
class Judgment:
    verdict: str
    confidence: float
    rationale: Optional[str] = None

    def to_dict(self) -> dict:
        return {"verdict": self.verdict, "confidence": self.confidence, "rationale": self.rationale}


class Judge(Protocol):
    """Judge contract: outcome, certainty in [0, 1], optional rationale."""

    def judge(self, trajectory: TaskTrajectory) -> Judgment: ...


def _extract_json_after(text: str, marker: str) -> Optional[dict]:
    """Extract first JSON object after marker using balanced brace matching."""
    idx = text.lower().find(marker.lower())
    if idx < 0:
        return None
    start = text.find('{', idx)
    if start < 0:
        return None
    depth = 0
    for i in range(start, len(text)):
        if text[i] == '{':
            depth += 1
        elif text[i] == '}':
            depth -= 1
        if depth == 0:
            try:
                return json.loads(text[start:i + 1])
            except json.JSONDecodeError:
                return None
    return None


def _last_marker(text: str, marker: str) -> Optional[str]:
    matches = re.findall(rf'{marker}:\s*(.*)', text, re.IGNORECASE)
    return matches[-1].strip() if matches else None


class MarkerJudge:
    """Judges from DELIVERED/BLOCKED/PARTIAL markers in trajectory.output."""

    def judge(self, trajectory: TaskTrajectory) -> Judgment:
        text = trajectory.output or ""
        delivered = _last_marker(text, "DELIVERED")
        blocked = _last_marker(text, "BLOCKED")
        partial = _last_marker(text, "PARTIAL")

        if partial is not None or (delivered is not None and blocked is not None):
            verdict, confidence = "partial", MIXED_CONFIDENCE
            rationale = partial or delivered
        elif delivered is not None:
            verdict, confidence, rationale = "success", MARKER_CONFIDENCE, delivered
        elif blocked is not None:
            verdict, confidence, rationale = "failure", MARKER_CONFIDENCE, blocked
        else:
            raise JudgeError("No outcome marker in task output", trajectory=trajectory.id)

        insight = _extract_json_after(text, "INSIGHT:")
        if insight and str(insight.get("content", "")).strip():
            rationale = str(insight["content"]).strip()

        return Judgment(verdict=verdict, confidence=confidence, rationale=rationale or None)
