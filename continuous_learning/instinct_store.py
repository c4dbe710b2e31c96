"""Instinct store: one JSON file per instinct.

personal/ holds instincts produced by the processor; inherited/ holds
instincts imported from elsewhere and is never written here. A batch of
upserts is staged as a complete new personal/ tree and swapped in under
the exclusive store lock, so a run's results appear all at once or not
at all.
"""

import json
import logging
import secrets
import shutil
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from continuous_learning.config import (
    INSTINCTS_LOCK,
    LearningConfig,
    get_inherited_dir,
    get_instincts_dir,
    get_personal_dir,
)
from continuous_learning.models import Instinct, InstinctSource
from continuous_learning.recovery import recover_interrupted_restore
from continuous_learning.utils import (
    atomic_write_text,
    file_lock,
    link_or_copy,
    recover_directory_swap,
    sanitize_id,
    swap_directory,
)

logger = logging.getLogger(__name__)

INSTINCT_SUFFIX: str = ".json"

# Prefix of the sibling directory a batch is staged in
STAGING_PREFIX: str = ".staging-"


def serialize_instinct(instinct: Instinct) -> str:
    """Encode an instinct exactly as it is stored on disk."""
    return json.dumps(instinct.to_dict(), indent=2, sort_keys=True) + "\n"


def instinct_file_name(instinct_id: str) -> str:
    return f"{sanitize_id(instinct_id)}{INSTINCT_SUFFIX}"


def load_instinct_dir(directory: Path, source: InstinctSource) -> dict[str, Instinct]:
    """Load every readable instinct file in a directory.

    Symlinks and unreadable or malformed files are logged and skipped.
    Takes no lock; callers that read the live store hold one.

    Returns:
        Mapping of instinct id to Instinct.
    """
    instincts: dict[str, Instinct] = {}
    if not directory.exists():
        return instincts

    for file_path in sorted(directory.glob(f"*{INSTINCT_SUFFIX}")):
        # Skip symlinks for defense in depth
        if file_path.is_symlink():
            logger.warning("Skipping symlink: %s", file_path)
            continue
        try:
            data = json.loads(file_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Failed to read instinct file %s: %s", file_path, e)
            continue
        except json.JSONDecodeError as e:
            logger.warning("Failed to parse instinct file %s: %s", file_path, e)
            continue
        try:
            instinct = Instinct.from_dict(data, source=source)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Invalid instinct file %s: %s", file_path, e)
            continue
        instincts[instinct.id] = instinct

    return instincts


@dataclass
class CommitResult:
    """Ids of the instincts a batch commit created, updated or left unchanged."""

    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": list(self.created),
            "updated": list(self.updated),
            "unchanged": list(self.unchanged),
        }


class InstinctStore:
    """Personal and inherited instincts under one storage root.

    Opening the store finishes an interrupted checkpoint restore, then
    rolls back a batch swap that was interrupted between its two renames.
    """

    def __init__(self, config: LearningConfig) -> None:
        self.config = config
        self.root = config.storage_root
        self.instincts_dir = get_instincts_dir(self.root)
        self.personal_dir = get_personal_dir(self.root)
        self.inherited_dir = get_inherited_dir(self.root)
        self.lock_file = self.root / INSTINCTS_LOCK
        recover_interrupted_restore(config)
        self._recover()

    def _recover(self) -> None:
        if not self.instincts_dir.exists():
            return
        with file_lock(self.lock_file, exclusive=True, timeout=self.config.lock_timeout):
            if recover_directory_swap(self.personal_dir):
                logger.warning("Recovered personal instincts from an interrupted commit")

    def load_personal(self) -> dict[str, Instinct]:
        with file_lock(self.lock_file, exclusive=False, timeout=self.config.lock_timeout):
            return load_instinct_dir(self.personal_dir, "personal")

    def load_inherited(self) -> dict[str, Instinct]:
        with file_lock(self.lock_file, exclusive=False, timeout=self.config.lock_timeout):
            return load_instinct_dir(self.inherited_dir, "inherited")

    def get(self, instinct_id: str) -> Instinct | None:
        """Look up an instinct by id; a personal instinct shadows an inherited one."""
        with file_lock(self.lock_file, exclusive=False, timeout=self.config.lock_timeout):
            for directory, source in (
                (self.personal_dir, "personal"),
                (self.inherited_dir, "inherited"),
            ):
                found = load_instinct_dir(directory, source).get(instinct_id)
                if found is not None:
                    return found
        return None

    def list(self, include_inherited: bool = True) -> list[Instinct]:
        """All instincts, highest confidence first (ties by id)."""
        with file_lock(self.lock_file, exclusive=False, timeout=self.config.lock_timeout):
            merged = {}
            if include_inherited:
                merged.update(load_instinct_dir(self.inherited_dir, "inherited"))
            merged.update(load_instinct_dir(self.personal_dir, "personal"))
        return sorted(merged.values(), key=lambda i: (-i.confidence, i.id))

    def commit(self, instincts: Iterable[Instinct]) -> CommitResult:
        """Upsert a batch of personal instincts atomically.

        An instinct whose stored form is identical is left untouched. A
        changed one keeps the stored created_at. Instincts not in the batch
        stay as they are.

        Raises:
            StoreLocked: If the store lock is not acquired within lock_timeout.
        """
        batch = {instinct.id: instinct for instinct in instincts}
        result = CommitResult()
        if not batch:
            return result

        recover_interrupted_restore(self.config)
        self.instincts_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        staged = self.instincts_dir / f"{STAGING_PREFIX}personal-{secrets.token_hex(4)}"

        with file_lock(self.lock_file, exclusive=True, timeout=self.config.lock_timeout):
            existing = load_instinct_dir(self.personal_dir, "personal")
            writes: dict[str, str] = {}

            for instinct_id in sorted(batch):
                instinct = batch[instinct_id]
                previous = existing.get(instinct_id)
                if previous is None:
                    writes[instinct_file_name(instinct_id)] = serialize_instinct(instinct)
                    result.created.append(instinct_id)
                    continue
                instinct = instinct.with_created_at(previous.created_at)
                content = serialize_instinct(instinct)
                if content == serialize_instinct(previous):
                    result.unchanged.append(instinct_id)
                else:
                    writes[instinct_file_name(instinct_id)] = content
                    result.updated.append(instinct_id)

            if not writes:
                return result

            try:
                staged.mkdir(mode=0o700)
                if self.personal_dir.exists():
                    for file_path in self.personal_dir.iterdir():
                        if file_path.is_symlink() or not file_path.is_file():
                            continue
                        if file_path.name not in writes:
                            link_or_copy(file_path, staged / file_path.name)
                for name, content in writes.items():
                    atomic_write_text(staged / name, content)
                swap_directory(self.personal_dir, staged)
            except BaseException:
                shutil.rmtree(staged, ignore_errors=True)
                raise

        logger.info(
            "Committed instincts: %d created, %d updated, %d unchanged",
            len(result.created),
            len(result.updated),
            len(result.unchanged),
        )
        return result
