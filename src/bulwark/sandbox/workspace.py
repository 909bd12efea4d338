"""Throwaway sandbox workspaces."""

from __future__ import annotations

import logging
import shutil
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)


def create_temp_workspace(prefix: str = "bulwark-", base_dir: Path | None = None) -> Path:
    """Create a private (0700) scratch directory for one sandboxed run."""
    path = Path(tempfile.mkdtemp(prefix=prefix, dir=str(base_dir) if base_dir else None))
    path.chmod(0o700)
    logger.debug("Created sandbox workspace %s", path)
    return path


def cleanup_workspace(path: Path) -> bool:
    """Remove a workspace created by :func:`create_temp_workspace`.

    Returns False (and logs) instead of raising when removal fails.
    """
    if not path.exists():
        return True
    try:
        shutil.rmtree(path)
    except OSError:
        logger.warning("Failed to clean up sandbox workspace %s", path, exc_info=True)
        return False
    logger.debug("Removed sandbox workspace %s", path)
    return True
