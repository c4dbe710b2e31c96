"""Completion of checkpoint restores that were interrupted mid-swap.

A restore writes .restore-journal.json under the storage root before it
swaps the staged checkpoint copy into place. While that journal exists
the root is half-restored, so every store finishes the swap before it
reads or writes anything.
"""

import json
import logging
import os
import shutil
from contextlib import ExitStack
from pathlib import Path
from typing import Any

from continuous_learning.config import (
    ARCHIVE_DIR_NAME,
    EVOLVED_DIR_NAME,
    EVOLVED_LOCK,
    IDENTITY_FILE_NAME,
    INSTINCTS_DIR_NAME,
    INSTINCTS_LOCK,
    OBSERVATIONS_FILE_NAME,
    OBSERVATIONS_LOCK,
    LearningConfig,
    get_checkpoints_dir,
)
from continuous_learning.utils import file_lock

logger = logging.getLogger(__name__)

RESTORE_JOURNAL: str = ".restore-journal.json"

# Entries under the storage root that make up the learning state
STATE_ENTRIES: tuple[str, ...] = (
    OBSERVATIONS_FILE_NAME,
    ARCHIVE_DIR_NAME,
    IDENTITY_FILE_NAME,
    INSTINCTS_DIR_NAME,
    EVOLVED_DIR_NAME,
)

# Lock files, always taken in this order
STORE_LOCKS: tuple[str, ...] = (OBSERVATIONS_LOCK, INSTINCTS_LOCK, EVOLVED_LOCK)


def restore_pending(root: Path) -> bool:
    return (root / RESTORE_JOURNAL).exists()


def hold_store_locks(stack: ExitStack, root: Path, exclusive: bool, timeout: float) -> None:
    """Enter every store lock on stack, in STORE_LOCKS order."""
    for name in STORE_LOCKS:
        stack.enter_context(file_lock(root / name, exclusive=exclusive, timeout=timeout))


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


def apply_restore_journal(root: Path, journal: dict[str, Any]) -> None:
    """Move staged entries into place. Safe to repeat after an interruption.

    Replaced entries are parked inside the staging directory and removed
    with it once every entry is in place. Caller holds the exclusive store
    locks.
    """
    staging = get_checkpoints_dir(root) / journal["staging"]
    parked = staging / ".replaced"
    parked.mkdir(parents=True, exist_ok=True, mode=0o700)
    absent = set(journal.get("absent", []))

    for entry in STATE_ENTRIES:
        target = root / entry
        staged = staging / entry
        if staged.exists() or staged.is_symlink():
            if target.exists() or target.is_symlink():
                _remove_path(parked / entry)
                os.rename(target, parked / entry)
            os.rename(staged, target)
        elif entry in absent and (target.exists() or target.is_symlink()):
            _remove_path(parked / entry)
            os.rename(target, parked / entry)

    (root / RESTORE_JOURNAL).unlink(missing_ok=True)
    shutil.rmtree(staging, ignore_errors=True)


def recover_interrupted_restore(config: LearningConfig) -> bool:
    """Finish a restore that was interrupted mid-swap, if there is one.

    Takes the exclusive store locks, so it must not be called while any
    store lock is held.

    Returns:
        True if an interrupted restore was rolled forward.

    Raises:
        StoreLocked: If a restore in progress holds the locks past lock_timeout.
    """
    root = config.storage_root
    if not restore_pending(root):
        return False

    journal_file = root / RESTORE_JOURNAL
    with ExitStack() as stack:
        hold_store_locks(stack, root, exclusive=True, timeout=config.lock_timeout)
        # A restore that held the locks may have finished while we waited
        if not journal_file.exists():
            return False
        try:
            journal = json.loads(journal_file.read_text(encoding="utf-8"))
            staging_name = journal["staging"]
        except (OSError, json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning("Discarding unreadable restore journal: %s", e)
            journal_file.unlink(missing_ok=True)
            return False
        if not (get_checkpoints_dir(root) / staging_name).exists():
            logger.warning("Discarding restore journal with no staged copy: %s", staging_name)
            journal_file.unlink(missing_ok=True)
            return False
        apply_restore_journal(root, journal)

    logger.warning("Completed interrupted restore of %s", journal.get("checkpoint_id"))
    return True
