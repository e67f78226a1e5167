"""Canonical path resolution for the patternbank state directory."""
import os
from pathlib import Path
from typing import Optional

STATE_DIR_NAME = ".patternbank"
DB_FILE_NAME = "patternbank.db"
DB_PATH_ENV = "PATTERNBANK_DB_PATH"


def get_state_dir(create: bool = True) -> Path:
    """Get .patternbank directory: ancestor search -> cwd."""
    cwd = Path.cwd()
    for parent in [cwd] + list(cwd.parents):
        state_dir = parent / STATE_DIR_NAME
        if state_dir.exists() and state_dir.is_dir():
            return state_dir

    state_dir = cwd / STATE_DIR_NAME
    if create:
        state_dir.mkdir(exist_ok=True)
    return state_dir


def resolve_db_path(explicit: Optional[str] = None) -> Path:
    """Resolve the database path: explicit -> PATTERNBANK_DB_PATH -> state dir."""
    if explicit:
        return Path(explicit).expanduser().resolve()
    env_path = os.environ.get(DB_PATH_ENV)
    if env_path:
        return Path(env_path).expanduser().resolve()
    return get_state_dir() / DB_FILE_NAME
