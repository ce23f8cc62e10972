"""
Cleanup: delete local job artifacts and temporary media assets after a job.
"""

import shutil
import logging
from pathlib import Path

from clipnotes.core.error_codes import ExternalUnavailable

logger = logging.getLogger(__name__)


def cleanup_job_artifacts(job_workspace: Path, keep_debug: bool = False):
    """
    Delete job artifacts after completion (success or failure).

    Deletes: source/, normalized/
    If keep_debug is True the workspace directory itself is preserved.
    """
    if not job_workspace.exists():
        return

    for dirname in ('source', 'normalized'):
        dir_path = job_workspace / dirname
        if dir_path.exists():
            try:
                shutil.rmtree(dir_path)
                logger.debug("Deleted: %s", dir_path)
            except OSError as e:
                logger.warning("Failed to delete %s: %s", dir_path, e)

    if keep_debug:
        return
    try:
        shutil.rmtree(job_workspace)
        logger.debug("Removed workspace: %s", job_workspace)
    except OSError as e:
        logger.warning("Failed to remove workspace %s: %s", job_workspace, e)


def delete_temp_assets(store, refs: list[str]) -> int:
    """
    Delete temporary media assets. Safe to call repeatedly; a failed delete
    is logged and the rest are still attempted. Returns how many were attempted.
    """
    if store is None or not refs:
        return 0
    for ref in refs:
        try:
            store.delete(ref)
        except (OSError, ExternalUnavailable) as e:
            logger.warning("Failed to delete media asset %s: %s", ref, e)
    return len(refs)
