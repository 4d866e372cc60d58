"""
Version-control lookups used as a secondary staleness signal.

Git being absent, the path being untracked, or the command timing out all
return None; callers then skip the revision comparison.
"""

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

RevisionLookup = Callable[[str], str | None]

GIT_TIMEOUT_SECONDS = 10


def git_revision(file_path: str) -> str | None:
    """Return the hash of the latest commit touching file_path, or None."""
    if shutil.which("git") is None:
        return None

    path = Path(file_path)
    cwd = path.parent if path.parent.exists() else None

    try:
        result = subprocess.run(
            ["git", "log", "-1", "--format=%H", "--", path.name if cwd else str(path)],
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=GIT_TIMEOUT_SECONDS,
        )
    except subprocess.TimeoutExpired:
        logger.warning(f"[VCS] git log timed out for {file_path}")
        return None
    except OSError as e:
        logger.debug(f"[VCS] git unavailable for {file_path}: {e}")
        return None

    if result.returncode != 0:
        return None

    revision = result.stdout.strip()
    return revision or None


def no_revision(file_path: str) -> str | None:
    """Revision lookup that never reports a revision."""
    return None
