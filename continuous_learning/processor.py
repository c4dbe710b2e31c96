"""Instinct processor: turns observations into scored instincts.

Reads every observation, groups them by pattern key, scores each group
and commits the groups that clear min_confidence as one batch.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from continuous_learning.confidence import SCORE_PRECISION, calculate_confidence, success_rate
from continuous_learning.config import LearningConfig
from continuous_learning.instinct_store import InstinctStore
from continuous_learning.models import Instinct, InstinctEvidence, Observation, UnknownData
from continuous_learning.observer import ObservationStore
from continuous_learning.patterns import PatternStrategy, derive_key, get_strategy, instinct_id_for

logger = logging.getLogger(__name__)


@dataclass
class PatternGroup:
    """Evidence accumulated for one pattern key.

    Attributes:
        pattern: The shared pattern key.
        strategy: Strategy that produced the key.
        sample: JSON form of the first well-formed payload, for the description.
        outcomes: Success signal of each occurrence (None when absent).
        contexts: Distinct (session_id, cwd) pairs.
        malformed: Reasons the group can't be scored, if any.
    """

    pattern: str
    strategy: PatternStrategy
    first_observed: datetime
    last_observed: datetime
    sample: dict[str, Any] | None = None
    count: int = 0
    outcomes: list[bool | None] = field(default_factory=list)
    contexts: set[tuple[str, str]] = field(default_factory=set)
    malformed: list[str] = field(default_factory=list)

    def add(self, observation: Observation) -> None:
        self.count += 1
        self.first_observed = min(self.first_observed, observation.timestamp)
        self.last_observed = max(self.last_observed, observation.timestamp)
        self.contexts.add(observation.context.key)
        if isinstance(observation.data, UnknownData):
            self.malformed.append(f"{observation.id}: {observation.data.reason}")
            return
        self.outcomes.append(observation.data.succeeded)
        if self.sample is None:
            self.sample = observation.data.to_dict()


@dataclass(frozen=True)
class ProcessResult:
    """Summary of one processing run."""

    instincts_created: int = 0
    instincts_updated: int = 0
    instincts_unchanged: int = 0
    groups_total: int = 0
    groups_below_threshold: int = 0
    groups_skipped: int = 0
    observations_read: int = 0
    cancelled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "instincts_created": self.instincts_created,
            "instincts_updated": self.instincts_updated,
            "instincts_unchanged": self.instincts_unchanged,
            "groups_total": self.groups_total,
            "groups_below_threshold": self.groups_below_threshold,
            "groups_skipped": self.groups_skipped,
            "observations_read": self.observations_read,
            "cancelled": self.cancelled,
        }


class InstinctProcessor:
    """Extracts instincts from the observation store.

    Args:
        config: Pipeline configuration.
        observations: Observation store to read; built from config if omitted.
        instincts: Instinct store to commit to; built from config if omitted.
    """

    def __init__(
        self,
        config: LearningConfig,
        observations: ObservationStore | None = None,
        instincts: InstinctStore | None = None,
    ) -> None:
        self.config = config
        self.observations = observations or ObservationStore(config)
        self.instincts = instincts or InstinctStore(config)

    def group(self, observations: list[Observation]) -> dict[str, PatternGroup]:
        """Group observations by pattern key.

        Observations of types that aren't aggregated are ignored. One whose
        key can't be derived is logged and left out.
        """
        groups: dict[str, PatternGroup] = {}
        for observation in observations:
            strategy = get_strategy(observation.kind)
            if strategy is None:
                continue
            try:
                key = derive_key(observation)
            except ValueError as e:
                logger.warning("Skipping observation %s: %s", observation.id, e)
                continue
            if key is None:
                continue
            group = groups.get(key)
            if group is None:
                group = PatternGroup(
                    pattern=key,
                    strategy=strategy,
                    first_observed=observation.timestamp,
                    last_observed=observation.timestamp,
                )
                groups[key] = group
            group.add(observation)
        return groups

    def score(self, group: PatternGroup, as_of: datetime) -> Instinct:
        """Build the scored instinct for a well-formed group."""
        rate = success_rate(group.outcomes)
        confidence, scores = calculate_confidence(
            observation_count=group.count,
            success=rate,
            last_observed=group.last_observed,
            as_of=as_of,
            context_count=len(group.contexts),
            normalizer=self.config.normalizer,
            context_normalizer=self.config.context_normalizer,
            half_life_days=self.config.recency_half_life_days,
        )
        return Instinct(
            id=instinct_id_for(group.pattern),
            pattern=group.pattern,
            description=group.strategy.describe(group.sample),
            category=group.strategy.category,
            confidence=confidence,
            evidence=InstinctEvidence(
                observation_count=group.count,
                success_rate=round(rate, SCORE_PRECISION),
                last_observed=group.last_observed,
                first_observed=group.first_observed,
                context_count=len(group.contexts),
            ),
            created_at=group.first_observed,
            updated_at=as_of,
            scores=scores,
        )

    def _score_groups(
        self,
        groups: dict[str, PatternGroup],
        min_confidence: float,
        as_of: datetime,
        cancel: threading.Event | None = None,
    ) -> tuple[list[Instinct], int, int, bool]:
        """Score groups in key order.

        Returns:
            The instincts clearing min_confidence, the below-threshold and
            skipped counts, and whether cancel stopped the loop.
        """
        batch: list[Instinct] = []
        below_threshold = 0
        skipped = 0

        for key in sorted(groups):
            if cancel is not None and cancel.is_set():
                logger.warning("Processing cancelled after %d of %d groups", len(batch), len(groups))
                return batch, below_threshold, skipped, True
            group = groups[key]
            if group.malformed or group.sample is None:
                logger.warning(
                    "Skipping malformed group %s: %s", key, "; ".join(group.malformed[:3])
                )
                skipped += 1
                continue
            instinct = self.score(group, as_of)
            if instinct.confidence < min_confidence:
                logger.debug("Group %s below threshold (%.4f)", key, instinct.confidence)
                below_threshold += 1
                continue
            batch.append(instinct)

        return batch, below_threshold, skipped, False

    def analyze(self, min_confidence: float = 0.0, as_of: datetime | None = None) -> list[Instinct]:
        """Score the current observations without committing anything.

        Returns:
            The instincts a process() run would commit, highest confidence
            first (ties by id).

        Raises:
            ValueError: If min_confidence is outside [0, 1].
        """
        if not 0.0 <= min_confidence <= 1.0:
            raise ValueError("min_confidence must be within [0, 1]")

        observations = list(self.observations.read_all())
        if not observations:
            return []
        if as_of is None:
            as_of = max(observation.timestamp for observation in observations)

        batch, _, _, _ = self._score_groups(self.group(observations), min_confidence, as_of)
        return sorted(batch, key=lambda i: (-i.confidence, i.id))

    def process(
        self,
        min_confidence: float = 0.0,
        cancel: threading.Event | None = None,
        as_of: datetime | None = None,
    ) -> ProcessResult:
        """Run one processing pass and commit the resulting instincts.

        Args:
            min_confidence: Groups scoring below this are not persisted.
            cancel: Checked between groups; when set, the groups scored so
                far are committed and the run stops.
            as_of: Reference time for recency. Defaults to the newest
                observation's timestamp, which keeps reruns over an
                unchanged store byte-identical.

        Returns:
            ProcessResult with created/updated/unchanged and skip counts.

        Raises:
            ValueError: If min_confidence is outside [0, 1].
            StoreLocked: If a store lock can't be acquired in time.
        """
        if not 0.0 <= min_confidence <= 1.0:
            raise ValueError("min_confidence must be within [0, 1]")

        observations = list(self.observations.read_all())
        if not observations:
            logger.info("No observations to process")
            return ProcessResult()

        if as_of is None:
            as_of = max(observation.timestamp for observation in observations)

        groups = self.group(observations)
        batch, below_threshold, skipped, cancelled = self._score_groups(
            groups, min_confidence, as_of, cancel
        )

        committed = self.instincts.commit(batch)
        result = ProcessResult(
            instincts_created=len(committed.created),
            instincts_updated=len(committed.updated),
            instincts_unchanged=len(committed.unchanged),
            groups_total=len(groups),
            groups_below_threshold=below_threshold,
            groups_skipped=skipped,
            observations_read=len(observations),
            cancelled=cancelled,
        )
        logger.info(
            "Processed %d observations into %d groups",
            result.observations_read,
            result.groups_total,
        )
        return result
