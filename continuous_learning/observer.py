"""Observation store for the continuous-learning pipeline.

Appends observations to a JSONL live log, sealing it into
observations.archive/ once it holds `archive_threshold` records.
Writers serialize on an fcntl lock; readers only hold a shared lock
long enough to snapshot which bytes belong to the store.
"""

import json
import logging
import secrets
import time
from collections import Counter
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, BinaryIO

from continuous_learning.config import (
    OBSERVATIONS_LOCK,
    LearningConfig,
    get_archive_dir,
    get_observations_file,
)
from continuous_learning.errors import CorruptRecord, InvalidObservation
from continuous_learning.models import (
    Observation,
    ObservationContext,
    ObservationType,
    UnknownData,
    decode_payload,
)
from continuous_learning.recovery import recover_interrupted_restore, restore_pending
from continuous_learning.utils import compact_timestamp, count_lines, file_lock, utc_now

logger = logging.getLogger(__name__)

# Prefix and glob of sealed archive files
ARCHIVE_PREFIX: str = "observations_"
ARCHIVE_GLOB: str = "observations_*.log"


def new_observation_id(timestamp: datetime | None = None) -> str:
    """Generate a time-ordered unique observation id."""
    timestamp = timestamp or utc_now()
    return f"obs_{compact_timestamp(timestamp)}_{secrets.token_hex(4)}"


def create_observation(
    obs_type: ObservationType | str,
    data: Any,
    context: ObservationContext | dict[str, Any] | None = None,
    source: str = "hook",
) -> Observation:
    """Build a new Observation, validating type and payload.

    Args:
        obs_type: Observation type (enum member or its value).
        data: Type-specific payload as a JSON object.
        context: Capture context, as a model or a plain dict.
        source: Who captured the event.

    Returns:
        A new Observation with a fresh id and UTC timestamp.

    Raises:
        InvalidObservation: If the type is unknown or data has the wrong shape.
    """
    kind = obs_type if isinstance(obs_type, ObservationType) else ObservationType.parse(obs_type)
    if kind is None:
        raise InvalidObservation(f"Unknown observation type: {obs_type}")
    try:
        payload = decode_payload(kind, data)
    except ValueError as e:
        raise InvalidObservation(f"Invalid data for {kind.value}: {e}") from e

    if not isinstance(context, ObservationContext):
        context = ObservationContext.from_dict(context or {})

    timestamp = utc_now()
    return Observation(
        id=new_observation_id(timestamp),
        timestamp=timestamp,
        type=kind.value,
        data=payload,
        context=context,
        source=source,
    )


@dataclass(frozen=True)
class StoreStats:
    """Counts describing the observation store."""

    total_count: int
    live_count: int
    archive_count: int
    count_by_type: dict[str, int]
    corrupt_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_count": self.total_count,
            "live_count": self.live_count,
            "archive_count": self.archive_count,
            "count_by_type": dict(sorted(self.count_by_type.items())),
            "corrupt_count": self.corrupt_count,
        }


def decode_line(line: str) -> Observation:
    """Decode one stored line.

    Raises:
        CorruptRecord: If the line is not valid JSON or lacks required fields.
    """
    try:
        record = json.loads(line)
    except json.JSONDecodeError as e:
        raise CorruptRecord(f"invalid JSON: {e.msg}") from e
    return Observation.from_record(record)


class ObservationStore:
    """Append-only observation log with size-based archival.

    Args:
        config: Pipeline configuration; its storage_root locates the files.
    """

    def __init__(self, config: LearningConfig) -> None:
        self.config = config
        self.root = config.storage_root
        self.live_file = get_observations_file(self.root)
        self.archive_dir = get_archive_dir(self.root)
        self.lock_file = self.root / OBSERVATIONS_LOCK

    def _validate(self, observation: Observation) -> None:
        kind = observation.kind
        if kind is None:
            raise InvalidObservation(f"Unknown observation type: {observation.type}")
        if not self.config.is_enabled(kind):
            raise InvalidObservation(f"Observation type {kind.value} is not enabled")
        if isinstance(observation.data, UnknownData):
            raise InvalidObservation(
                f"Invalid data for {kind.value}: {observation.data.reason}"
            )
        # Re-decode the encoded payload so a hand-built variant can't slip past
        try:
            decode_payload(kind, observation.data.to_dict())
        except ValueError as e:
            raise InvalidObservation(f"Invalid data for {kind.value}: {e}") from e

    def append(self, observation: Observation) -> None:
        """Validate and durably append one observation.

        Seals the live log into an archive when it reaches the threshold.
        The append and the sealing happen under one exclusive lock, so a
        concurrent writer's record lands either before or after the seal.

        Raises:
            InvalidObservation: If the observation fails validation.
            StoreLocked: If the lock is not acquired within lock_timeout.
        """
        self._validate(observation)
        line = json.dumps(observation.to_record(), separators=(",", ":")) + "\n"

        self.root.mkdir(parents=True, exist_ok=True, mode=0o700)
        while True:
            recover_interrupted_restore(self.config)
            with file_lock(self.lock_file, exclusive=True, timeout=self.config.lock_timeout):
                # A restore may have started between recovery and the lock
                if restore_pending(self.root):
                    continue
                with self.live_file.open("a", encoding="utf-8") as f:
                    f.write(line)
                    f.flush()
                self._archive_if_needed()
            break

        logger.debug("Appended observation %s (%s)", observation.id, observation.type)

    def record(
        self,
        obs_type: ObservationType | str,
        data: Any,
        context: ObservationContext | dict[str, Any] | None = None,
        source: str = "hook",
    ) -> Observation:
        """Create an observation from raw inputs and append it.

        Returns:
            The stored Observation.
        """
        observation = create_observation(obs_type, data, context, source)
        self.append(observation)
        return observation

    def _archive_if_needed(self) -> Path | None:
        """Seal the live log if it holds archive_threshold records. Caller holds the lock."""
        if count_lines(self.live_file) < self.config.archive_threshold:
            return None

        self.archive_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        archive_path = self.archive_dir / f"{ARCHIVE_PREFIX}{compact_timestamp(utc_now())}.log"
        # Names must sort in sealing order, so wait for the clock instead of adding a suffix
        while archive_path.exists():
            time.sleep(0.001)
            archive_path = self.archive_dir / f"{ARCHIVE_PREFIX}{compact_timestamp(utc_now())}.log"

        self.live_file.rename(archive_path)
        self.live_file.touch(mode=0o600)
        logger.info("Sealed observation log into %s", archive_path.name)
        return archive_path

    def archive_files(self) -> list[Path]:
        """Sealed archives, oldest first."""
        if not self.archive_dir.exists():
            return []
        return sorted(self.archive_dir.glob(ARCHIVE_GLOB))

    def _snapshot(self) -> tuple[list[Path], BinaryIO | None, int]:
        """Capture the archive list and live-log extent under a shared lock.

        The live file is opened while locked; if it is sealed afterwards,
        the open handle still refers to the same data, now in the archive.
        """
        while True:
            recover_interrupted_restore(self.config)
            with file_lock(self.lock_file, exclusive=False, timeout=self.config.lock_timeout):
                if restore_pending(self.root):
                    continue
                archives = self.archive_files()
                if not self.live_file.exists():
                    return archives, None, 0
                handle = self.live_file.open("rb")
                size = self.live_file.stat().st_size
                return archives, handle, size

    def read_all(self) -> Iterator[Observation]:
        """Yield every stored observation: the live log, then archives oldest first.

        Unparseable lines are logged and skipped; they never abort the read.
        Each call starts a fresh pass over the store.
        """
        return self._read(live_first=True)

    def _read(self, live_first: bool) -> Iterator[Observation]:
        archives, live_handle, live_size = self._snapshot()
        try:
            if live_first and live_handle is not None:
                yield from self._decode_stream(live_handle, self.live_file, limit=live_size)
            for archive in archives:
                with archive.open("rb") as f:
                    yield from self._decode_stream(f, archive, limit=None)
            if not live_first and live_handle is not None:
                yield from self._decode_stream(live_handle, self.live_file, limit=live_size)
        finally:
            if live_handle is not None:
                live_handle.close()

    def _decode_stream(
        self, stream: BinaryIO, path: Path, limit: int | None
    ) -> Iterator[Observation]:
        consumed = 0
        for line_number, raw in enumerate(stream, start=1):
            # Bytes past the snapshot belong to appends made after it
            if limit is not None:
                if consumed + len(raw) > limit:
                    return
                consumed += len(raw)
            text = raw.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            try:
                yield decode_line(text)
            except CorruptRecord as e:
                logger.warning("Skipping corrupt record %s:%d: %s", path.name, line_number, e)

    def tail(self, limit: int = 100) -> list[Observation]:
        """Return the most recent `limit` observations, oldest first."""
        if limit <= 0:
            return []
        recent: list[Observation] = []
        for observation in self._read(live_first=False):
            recent.append(observation)
            if len(recent) > limit:
                recent.pop(0)
        return recent

    def stats(self) -> StoreStats:
        """Count observations in the live log and archives, by type.

        Corrupt lines are counted separately and excluded from the totals.
        """
        archives, live_handle, live_size = self._snapshot()
        by_type: Counter[str] = Counter()
        counts = {"live": 0, "archived": 0, "corrupt": 0}

        def tally(stream: BinaryIO, limit: int | None, bucket: str) -> None:
            consumed = 0
            for raw in stream:
                if limit is not None:
                    if consumed + len(raw) > limit:
                        break
                    consumed += len(raw)
                text = raw.decode("utf-8", errors="replace").strip()
                if not text:
                    continue
                try:
                    record = json.loads(text)
                    obs_type = record["type"]
                except (json.JSONDecodeError, KeyError, TypeError):
                    counts["corrupt"] += 1
                    continue
                counts[bucket] += 1
                by_type[str(obs_type)] += 1

        try:
            for archive in archives:
                with archive.open("rb") as f:
                    tally(f, None, "archived")
            if live_handle is not None:
                tally(live_handle, live_size, "live")
        finally:
            if live_handle is not None:
                live_handle.close()

        return StoreStats(
            total_count=counts["live"] + counts["archived"],
            live_count=counts["live"],
            archive_count=len(archives),
            count_by_type=dict(by_type),
            corrupt_count=counts["corrupt"],
        )

    def latest_timestamp(self) -> datetime | None:
        """Timestamp of the newest observation, or None for an empty store."""
        latest = None
        for observation in self.read_all():
            if latest is None or observation.timestamp > latest:
                latest = observation.timestamp
        return latest
