import os
from typing import Optional

from .logging import get_logger

log = get_logger("paths")

# a directory holding any of these is treated as the project root
ROOT_DIR_MARKERS = (".git",)
ROOT_FILE_MARKERS = ("pyproject.toml", ".env", "README.md")


def expand_abs(path: str) -> str:
    """`~` and `$VARS` expanded, then made absolute."""
    return os.path.abspath(os.path.expanduser(os.path.expandvars(path or "")))


def _is_root(d: str) -> bool:
    return any(os.path.isdir(os.path.join(d, m)) for m in ROOT_DIR_MARKERS) or any(
        os.path.isfile(os.path.join(d, m)) for m in ROOT_FILE_MARKERS
    )


def find_project_root(start_dir: Optional[str] = None) -> str:
    """Closest directory at or above start_dir carrying a root marker.

    Without any marker on the way up, start_dir itself is the root.
    """
    start = os.path.abspath(start_dir or os.getcwd() or ".")
    d = start
    while not _is_root(d):
        parent = os.path.dirname(d)
        if parent == d:
            log.debug(f"No project marker above {start}; using it as root")
            return start
        d = parent
    return d


def var_dir(root_dir: str) -> str:
    """`<root>/var`, where the default SQLite file lives."""
    return os.path.join(os.path.abspath(root_dir), "var")
