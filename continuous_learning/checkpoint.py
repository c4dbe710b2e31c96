"""Checkpoint manager: snapshot and restore the whole learning state.

A checkpoint is a directory under checkpoints/ holding a copy of the
observation log and archives, identity.json, instincts/ and evolved/,
plus a manifest.json describing it.

Creating a checkpoint holds shared locks on the stores while the copy
is staged, hard-linking files the pipeline only ever replaces and
copying the ones it appends to. Restoring copies the checkpoint into a
staging area, then swaps each state entry into place following a
journal, so an interrupted restore is finished the next time any store
is opened.
"""

import json
import logging
import os
import secrets
import shutil
import tarfile
import time
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any

from continuous_learning.config import (
    ARCHIVE_DIR_NAME,
    EVOLVED_DIR_NAME,
    INSTINCTS_DIR_NAME,
    OBSERVATIONS_FILE_NAME,
    LearningConfig,
    get_checkpoints_dir,
)
from continuous_learning.errors import CheckpointExportError, CheckpointNotFound, InvalidArchive
from continuous_learning.evolution import LOG_FILE_NAME
from continuous_learning.instinct_store import INSTINCT_SUFFIX, InstinctStore, load_instinct_dir
from continuous_learning.models import CheckpointInfo, Instinct
from continuous_learning.observer import ObservationStore
from continuous_learning.recovery import (
    RESTORE_JOURNAL,
    STATE_ENTRIES,
    apply_restore_journal,
    hold_store_locks,
    recover_interrupted_restore,
)
from continuous_learning.utils import (
    atomic_write_text,
    compact_timestamp,
    count_lines,
    link_or_copy,
    sanitize_id,
    utc_now,
)

logger = logging.getLogger(__name__)

CHECKPOINT_PREFIX: str = "checkpoint_"
MANIFEST_FILE_NAME: str = "manifest.json"
STAGING_PREFIX: str = ".staging-"
RESTORE_PREFIX: str = ".restore-"
PRE_RESTORE_NAME: str = "pre-restore"

# Files appended to in place; these are copied, never hard-linked
APPEND_ONLY_FILES: frozenset[str] = frozenset({OBSERVATIONS_FILE_NAME, LOG_FILE_NAME})


@dataclass(frozen=True)
class RestoreResult:
    """Checkpoint that was restored and the backup taken before it."""

    restored: CheckpointInfo
    backup: CheckpointInfo | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "restored": self.restored.id,
            "backup": self.backup.id if self.backup else None,
        }


def _snapshot_tree(source: Path, destination: Path, link: bool) -> None:
    """Mirror a directory tree, skipping hidden entries and symlinks.

    With link=True, regular files are hard-linked (copied where linking
    fails) except APPEND_ONLY_FILES, which are always copied.
    """
    destination.mkdir(parents=True, exist_ok=True, mode=0o700)
    for entry in sorted(source.iterdir()):
        # Staging, lock and swap leftovers are not state
        if entry.name.startswith(".") or entry.name.endswith(".previous"):
            continue
        if entry.is_symlink():
            logger.warning("Skipping symlink: %s", entry)
            continue
        target = destination / entry.name
        if entry.is_dir():
            _snapshot_tree(entry, target, link)
        elif link and entry.name not in APPEND_ONLY_FILES:
            link_or_copy(entry, target)
        else:
            shutil.copy2(entry, target)


def _copy_entry(source: Path, destination: Path, link: bool) -> None:
    if source.is_dir():
        _snapshot_tree(source, destination, link)
    elif link and source.name not in APPEND_ONLY_FILES:
        link_or_copy(source, destination)
    else:
        destination.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        shutil.copy2(source, destination)


def _validate_members(members: list[tarfile.TarInfo]) -> str:
    """Check every member is a file or directory under one top-level directory.

    Returns:
        Name of the top-level directory.
    """
    tops = set()
    for member in members:
        path = PurePosixPath(member.name)
        if path.is_absolute() or ".." in path.parts:
            raise InvalidArchive(f"Unsafe path in archive: {member.name}")
        if not (member.isfile() or member.isdir()):
            raise InvalidArchive(f"Unsupported member type in archive: {member.name}")
        tops.add(path.parts[0])
    if len(tops) != 1:
        raise InvalidArchive("Archive must contain exactly one checkpoint directory")
    top = tops.pop()
    if top.startswith(".") or sanitize_id(top) != top:
        raise InvalidArchive(f"Invalid checkpoint directory in archive: {top}")
    return top


class CheckpointManager:
    """Creates, lists, restores and transfers checkpoints.

    Args:
        config: Pipeline configuration; its storage_root is what gets
            checkpointed.
    """

    def __init__(self, config: LearningConfig) -> None:
        self.config = config
        self.root = config.storage_root
        self.checkpoints_dir = get_checkpoints_dir(self.root)
        self.journal_file = self.root / RESTORE_JOURNAL
        self.recover()

    def _locks(self, stack: ExitStack, exclusive: bool) -> None:
        hold_store_locks(stack, self.root, exclusive=exclusive, timeout=self.config.lock_timeout)

    def _new_id(self) -> str:
        checkpoint_id = f"{CHECKPOINT_PREFIX}{compact_timestamp(utc_now())}"
        while (self.checkpoints_dir / checkpoint_id).exists():
            time.sleep(0.001)
            checkpoint_id = f"{CHECKPOINT_PREFIX}{compact_timestamp(utc_now())}"
        return checkpoint_id

    def _checkpoint_dir(self, checkpoint_id: str) -> Path:
        """Directory of an existing checkpoint.

        Raises:
            CheckpointNotFound: If no checkpoint has this id.
        """
        if not checkpoint_id or sanitize_id(checkpoint_id) != checkpoint_id:
            raise CheckpointNotFound(f"Checkpoint not found: {checkpoint_id}")
        directory = self.checkpoints_dir / checkpoint_id
        if not (directory / MANIFEST_FILE_NAME).is_file():
            raise CheckpointNotFound(f"Checkpoint not found: {checkpoint_id}")
        return directory

    @staticmethod
    def _stats(directory: Path) -> dict[str, int]:
        """Count observations, instincts and artifacts in a checkpoint tree."""
        observation_count = count_lines(directory / OBSERVATIONS_FILE_NAME)
        archive_dir = directory / ARCHIVE_DIR_NAME
        if archive_dir.exists():
            observation_count += sum(count_lines(p) for p in archive_dir.glob("*.log"))
        instinct_count = len(list((directory / INSTINCTS_DIR_NAME).glob(f"*/*{INSTINCT_SUFFIX}")))
        artifact_count = len(list((directory / EVOLVED_DIR_NAME).glob("*/*.md")))
        return {
            "observation_count": observation_count,
            "instinct_count": instinct_count,
            "artifact_count": artifact_count,
        }

    def create(self, name: str | None = None) -> CheckpointInfo:
        """Snapshot the current state into a new checkpoint.

        Args:
            name: Optional human-readable label.

        Returns:
            The new checkpoint's manifest.

        Raises:
            StoreLocked: If a store lock can't be acquired in time.
        """
        self.recover()
        self.checkpoints_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        checkpoint_id = self._new_id()
        staging = self.checkpoints_dir / f"{STAGING_PREFIX}{checkpoint_id}"

        try:
            with ExitStack() as stack:
                self._locks(stack, exclusive=False)
                staging.mkdir(mode=0o700)
                for entry in STATE_ENTRIES:
                    source = self.root / entry
                    if source.exists():
                        _copy_entry(source, staging / entry, link=True)

            info = CheckpointInfo(
                id=checkpoint_id,
                name=name or checkpoint_id,
                created_at=utc_now(),
                stats=self._stats(staging),
            )
            atomic_write_text(
                staging / MANIFEST_FILE_NAME,
                json.dumps(info.to_dict(), indent=2, sort_keys=True) + "\n",
            )
            os.rename(staging, self.checkpoints_dir / checkpoint_id)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        logger.info("Created checkpoint %s", checkpoint_id)
        return info

    def get(self, checkpoint_id: str) -> CheckpointInfo:
        """Read a checkpoint's manifest.

        Raises:
            CheckpointNotFound: If no checkpoint has this id.
        """
        directory = self._checkpoint_dir(checkpoint_id)
        try:
            data = json.loads((directory / MANIFEST_FILE_NAME).read_text(encoding="utf-8"))
            return CheckpointInfo.from_dict(data)
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise CheckpointNotFound(f"Checkpoint {checkpoint_id} has an unreadable manifest: {e}") from e

    def list(self) -> list[CheckpointInfo]:
        """All checkpoints, oldest first."""
        if not self.checkpoints_dir.exists():
            return []
        checkpoints = []
        for directory in self.checkpoints_dir.iterdir():
            if directory.name.startswith(".") or not directory.is_dir():
                continue
            try:
                checkpoints.append(self.get(directory.name))
            except CheckpointNotFound as e:
                logger.warning("Skipping checkpoint %s: %s", directory.name, e)
        return sorted(checkpoints, key=lambda c: (c.created_at, c.id))

    def restore(self, checkpoint_id: str, backup: bool = True) -> RestoreResult:
        """Replace the current state with a checkpoint's copy.

        All five state entries are replaced; entries absent from the
        checkpoint are removed. The swap is journaled so an interrupted
        restore completes on the next recover().

        Args:
            checkpoint_id: Checkpoint to restore.
            backup: Take a "pre-restore" checkpoint of the current state first.

        Raises:
            CheckpointNotFound: If no checkpoint has this id.
            StoreLocked: If a store lock can't be acquired in time.
        """
        self.recover()
        info = self.get(checkpoint_id)
        source = self._checkpoint_dir(checkpoint_id)
        backup_info = self.create(name=PRE_RESTORE_NAME) if backup else None

        staging = self.checkpoints_dir / f"{RESTORE_PREFIX}{checkpoint_id}-{secrets.token_hex(4)}"
        try:
            staging.mkdir(mode=0o700)
            absent = []
            for entry in STATE_ENTRIES:
                if (source / entry).exists():
                    # Restored files must not share inodes with the checkpoint
                    _copy_entry(source / entry, staging / entry, link=False)
                else:
                    absent.append(entry)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        journal = {
            "checkpoint_id": checkpoint_id,
            "staging": staging.name,
            "absent": absent,
        }
        with ExitStack() as stack:
            self._locks(stack, exclusive=True)
            atomic_write_text(self.journal_file, json.dumps(journal, indent=2) + "\n")
            self._apply_journal(journal)

        logger.info("Restored checkpoint %s", checkpoint_id)
        return RestoreResult(restored=info, backup=backup_info)

    def _apply_journal(self, journal: dict[str, Any]) -> None:
        """Move staged entries into place. Caller holds the exclusive store locks."""
        apply_restore_journal(self.root, journal)

    def recover(self) -> bool:
        """Finish a restore that was interrupted mid-swap.

        Returns:
            True if an interrupted restore was rolled forward.
        """
        return recover_interrupted_restore(self.config)

    def diff(self, checkpoint_id: str) -> dict[str, Any]:
        """Compare a checkpoint's instincts and observation count with the current state.

        Raises:
            CheckpointNotFound: If no checkpoint has this id.
        """
        info = self.get(checkpoint_id)
        directory = self._checkpoint_dir(checkpoint_id)

        then: dict[str, Instinct] = {}
        for source in ("inherited", "personal"):
            then.update(load_instinct_dir(directory / INSTINCTS_DIR_NAME / source, source))
        now = {instinct.id: instinct for instinct in InstinctStore(self.config).list()}

        changed = []
        for instinct_id in sorted(set(then) & set(now)):
            before, after = then[instinct_id], now[instinct_id]
            if before.confidence != after.confidence or (
                before.evidence.observation_count != after.evidence.observation_count
            ):
                changed.append(
                    {
                        "id": instinct_id,
                        "confidence_before": before.confidence,
                        "confidence_after": after.confidence,
                        "observations_before": before.evidence.observation_count,
                        "observations_after": after.evidence.observation_count,
                    }
                )

        checkpoint_observations = info.stats.get("observation_count", 0)
        current_observations = ObservationStore(self.config).stats().total_count
        return {
            "checkpoint_id": checkpoint_id,
            "checkpoint_date": info.to_dict()["created_at"],
            "observations": {
                "checkpoint": checkpoint_observations,
                "current": current_observations,
                "delta": current_observations - checkpoint_observations,
            },
            "instincts": {
                "added": sorted(set(now) - set(then)),
                "removed": sorted(set(then) - set(now)),
                "changed": changed,
            },
        }

    def export(self, checkpoint_id: str, output_path: Path) -> Path:
        """Write a checkpoint as a gzip-compressed tarball.

        Raises:
            CheckpointNotFound: If no checkpoint has this id.
            CheckpointExportError: If the tarball cannot be written.
        """
        directory = self._checkpoint_dir(checkpoint_id)
        output_path = Path(output_path)
        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            with tarfile.open(output_path, "w:gz") as tar:
                tar.add(directory, arcname=checkpoint_id)
        except (OSError, tarfile.TarError) as e:
            if output_path.is_file():
                output_path.unlink(missing_ok=True)
            raise CheckpointExportError(f"Failed to export checkpoint {checkpoint_id} to {output_path}: {e}") from e
        logger.info("Exported checkpoint %s to %s", checkpoint_id, output_path)
        return output_path

    def import_archive(self, input_path: Path) -> CheckpointInfo:
        """Add a checkpoint from a tarball written by export().

        The imported checkpoint gets a new id; its manifest records the
        archive it came from.

        Raises:
            InvalidArchive: If the file is not a checkpoint tarball or holds
                members outside its top-level directory.
        """
        input_path = Path(input_path)
        self.checkpoints_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        checkpoint_id = self._new_id()
        staging = self.checkpoints_dir / f"{STAGING_PREFIX}{checkpoint_id}"

        try:
            with tarfile.open(input_path, "r:gz") as tar:
                top = _validate_members(tar.getmembers())
                extract_kwargs: dict[str, Any] = {}
                if hasattr(tarfile, "data_filter"):
                    extract_kwargs["filter"] = "data"
                tar.extractall(staging, **extract_kwargs)
        except (OSError, tarfile.TarError) as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise InvalidArchive(f"Failed to read checkpoint archive {input_path}: {e}") from e
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        try:
            extracted = staging / top
            try:
                original = CheckpointInfo.from_dict(
                    json.loads((extracted / MANIFEST_FILE_NAME).read_text(encoding="utf-8"))
                )
            except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                raise InvalidArchive(f"Archive {input_path} has no valid manifest: {e}") from e

            info = CheckpointInfo(
                id=checkpoint_id,
                name=original.name,
                created_at=utc_now(),
                stats=self._stats(extracted),
                imported_from=str(input_path),
            )
            atomic_write_text(
                extracted / MANIFEST_FILE_NAME,
                json.dumps(info.to_dict(), indent=2, sort_keys=True) + "\n",
            )
            os.rename(extracted, self.checkpoints_dir / checkpoint_id)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        logger.info("Imported checkpoint %s from %s", checkpoint_id, input_path)
        return info
