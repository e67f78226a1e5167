"""patternbank database package - SQLite backend for all storage operations."""

from .schema import (
    Pattern, PatternLink, TaskTrajectory,
    VERDICTS, RELATIONS, CONFIDENCE_FLOOR, CONFIDENCE_CEILING, INITIAL_CONFIDENCE,
    embed_to_blob, blob_to_embed, now_iso, parse_ts,
)
from .connection import connect, init_db, current_version, SCHEMA_VERSION
from .locks import RowLocks

__all__ = [
    # Schema
    'Pattern', 'PatternLink', 'TaskTrajectory',
    'VERDICTS', 'RELATIONS', 'CONFIDENCE_FLOOR', 'CONFIDENCE_CEILING', 'INITIAL_CONFIDENCE',
    'embed_to_blob', 'blob_to_embed', 'now_iso', 'parse_ts',
    # Connection
    'connect', 'init_db', 'current_version', 'SCHEMA_VERSION',
    # Concurrency
    'RowLocks',
]
