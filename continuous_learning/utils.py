"""Shared utility functions for the continuous-learning pipeline."""

import fcntl
import hashlib
import os
import re
import shutil
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from continuous_learning.errors import StoreLocked

# Poll interval while waiting on a contended lock
LOCK_POLL_INTERVAL: float = 0.05

# Suffix of the directory holding the old tree during a directory swap
PREVIOUS_SUFFIX: str = ".previous"


def sanitize_id(raw_id: str, allow_dots: bool = False) -> str:
    """Sanitize an ID or filename to prevent path traversal attacks.

    Args:
        raw_id: The raw ID or filename string.
        allow_dots: If True, preserve dots (for filenames). Default False (for IDs).

    Returns:
        A safe string containing only alphanumeric characters, dash, and underscore.
        Returns 'unnamed' if input is empty or fully invalid.
    """
    safe_id = os.path.basename(raw_id)

    if allow_dots:
        safe_id = re.sub(r"[^a-zA-Z0-9_.-]", "-", safe_id)
    else:
        safe_id = re.sub(r"[^a-zA-Z0-9_-]", "-", safe_id)

    safe_id = re.sub(r"-+", "-", safe_id).strip("-")

    if not safe_id:
        safe_id = "unnamed"

    return safe_id


def short_digest(value: str, length: int = 8) -> str:
    """Return the first `length` hex characters of the SHA-1 of value."""
    return hashlib.sha1(value.encode("utf-8")).hexdigest()[:length]


def normalize_key_part(value: object) -> str:
    """Normalize one component of a pattern key.

    Lower-cases, trims and collapses internal whitespace to a single
    underscore so that "Bulk  Create" and "bulk create" group together.
    """
    text = str(value).strip().lower()
    return re.sub(r"\s+", "_", text)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format an aware datetime as an ISO-8601 UTC string."""
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 string into an aware UTC datetime.

    Naive values are assumed to be UTC. A trailing 'Z' is accepted.

    Raises:
        ValueError: If value is not a valid ISO-8601 timestamp.
    """
    if not isinstance(value, str):
        raise ValueError(f"Timestamp must be a string, got {type(value).__name__}")
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def compact_timestamp(value: datetime) -> str:
    """Format a datetime for use inside ids and file names."""
    return value.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")


def count_lines(path: Path) -> int:
    """Count non-empty lines in a file, or 0 if it doesn't exist."""
    if not path.exists():
        return 0
    with path.open("rb") as f:
        return sum(1 for line in f if line.strip())


def atomic_write_text(path: Path, content: str) -> None:
    """Write content to path via a temporary file and os.replace.

    Readers see either the old or the new content, never a partial write.
    The file is replaced rather than modified in place, which is what makes
    hard-linking it into a checkpoint safe.
    """
    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


@contextmanager
def file_lock(lock_path: Path, exclusive: bool = True, timeout: float = 5.0) -> Iterator[None]:
    """Hold an advisory fcntl lock on lock_path for the duration of the block.

    Uses non-blocking flock attempts until `timeout` elapses so that a stuck
    writer can never hang another session indefinitely.

    Args:
        lock_path: Path to the lock file (created if missing).
        exclusive: LOCK_EX if True, LOCK_SH otherwise.
        timeout: Seconds to wait before giving up.

    Raises:
        StoreLocked: If the lock is not acquired within timeout.
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    operation = fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH
    deadline = time.monotonic() + timeout

    with lock_path.open("a") as f:
        while True:
            try:
                fcntl.flock(f.fileno(), operation | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise StoreLocked(
                        f"Timed out after {timeout}s waiting for lock {lock_path.name}"
                    ) from None
                time.sleep(LOCK_POLL_INTERVAL)
        try:
            yield
        finally:
            fcntl.flock(f.fileno(), fcntl.LOCK_UN)


def _previous_path(target: Path) -> Path:
    return target.with_name(target.name + PREVIOUS_SUFFIX)


def swap_directory(target: Path, staged: Path) -> None:
    """Replace directory target with staged using two renames.

    The old tree is parked next to target until the new one is in place.
    If the process dies between the renames, recover_directory_swap()
    puts the old tree back.
    """
    previous = _previous_path(target)
    if previous.exists():
        shutil.rmtree(previous)
    if target.exists():
        os.rename(target, previous)
    os.rename(staged, target)
    if previous.exists():
        shutil.rmtree(previous)


def recover_directory_swap(target: Path) -> bool:
    """Undo a half-finished swap_directory() on target.

    Returns:
        True if the previous tree was restored.
    """
    previous = _previous_path(target)
    if not previous.exists():
        return False
    if target.exists():
        shutil.rmtree(previous)
        return False
    os.rename(previous, target)
    return True


def link_or_copy(source: Path, destination: Path) -> None:
    """Hard-link source to destination, copying when linking is not possible."""
    destination.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    try:
        os.link(source, destination)
    except OSError:
        shutil.copy2(source, destination)
