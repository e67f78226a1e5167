"""Shared fixtures for the patternbank test suite.

Design principles:
- Database isolation: fresh SQLite file per test via tmp_path
- Deterministic time: a fixed NOW so recency and pruning are exact
- Hand-built vectors: scoring tests control cosine values directly
- No mocking core logic: tests run against real SQLite
"""

import math
import os
import subprocess
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent

# Ensure patternbank is importable without installation
sys.path.insert(0, str(ROOT))

NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def unit(*values):
    """Normalize a vector to unit length."""
    norm = math.sqrt(sum(v * v for v in values))
    return tuple(v / norm for v in values)


def at_cosine(c):
    """3-dim unit vector whose cosine with (1, 0, 0) is c."""
    return (c, math.sqrt(1 - c * c), 0.0)


def days_ago(days, now=NOW):
    return (now - timedelta(days=days)).isoformat()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def store(tmp_path):
    """Fresh file-backed store per test."""
    from patternbank.memory.store import PatternStore

    s = PatternStore(tmp_path / "patternbank.db")
    yield s
    s.close()


@pytest.fixture
def config():
    from patternbank.config import EngineConfig
    return EngineConfig()


@pytest.fixture
def make_pattern(store):
    """Factory: insert a pattern with sensible test defaults."""
    from patternbank.db.schema import Pattern

    def _make(pid, embedding=(1.0, 0.0, 0.0), namespace="test", **fields):
        fields.setdefault("content", f"pattern {pid}")
        fields.setdefault("created_at", NOW.isoformat())
        return store.put_pattern(Pattern(id=pid, namespace=namespace, embedding=embedding, **fields))

    return _make


@pytest.fixture
def make_trajectory():
    """Factory: build (not store) a trajectory."""
    from patternbank.db.schema import TaskTrajectory

    def _make(tid, used=(), verdict="success", namespace="test", **fields):
        fields.setdefault("query_text", f"query for {tid}")
        fields.setdefault("verdict_confidence", 0.9)
        return TaskTrajectory(id=tid, namespace=namespace, used_pattern_ids=list(used),
                              verdict=verdict, **fields)

    return _make


class FailingEmbedder:
    """Embedder whose provider is down."""

    def __init__(self):
        self.calls = 0

    def embed(self, text, namespace=""):
        from patternbank.errors import EmbeddingError
        self.calls += 1
        raise EmbeddingError("provider unavailable")


class ZeroEmbedder:
    """Embedder that returns a useless vector."""

    def embed(self, text, namespace=""):
        return (0.0, 0.0, 0.0)


@pytest.fixture
def failing_embedder():
    return FailingEmbedder()


@pytest.fixture
def zero_embedder():
    return ZeroEmbedder()


class CLIRunner:
    """Run the patternbank CLI in a temp directory."""

    def __init__(self, work_dir: Path):
        self.work_dir = work_dir
        self.db_path = work_dir / ".patternbank" / "patternbank.db"

    def run(self, *args, stdin: str = None) -> tuple:
        """Run ``python -m patternbank`` with args. Returns (code, stdout, stderr)."""
        cmd = [sys.executable, "-m", "patternbank"] + list(args)
        env = os.environ.copy()
        env["PATTERNBANK_DB_PATH"] = str(self.db_path)
        env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(ROOT), env.get("PYTHONPATH")]))
        env.pop("PATTERNBANK_LOG_FILE", None)
        result = subprocess.run(
            cmd,
            cwd=self.work_dir,
            env=env,
            input=stdin,
            capture_output=True,
            text=True,
            timeout=60,
        )
        return result.returncode, result.stdout, result.stderr


@pytest.fixture
def cli(tmp_path):
    return CLIRunner(tmp_path)
