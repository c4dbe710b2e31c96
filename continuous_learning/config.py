"""Configuration and path definitions for the continuous-learning pipeline.

The storage root is the only shared mutable resource. Every component
receives a LearningConfig explicitly, so several independent pipelines
(e.g. one per project) can coexist in one process.
"""

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from continuous_learning.errors import ConfigError
from continuous_learning.models import ArtifactKind, ObservationType
from continuous_learning.utils import atomic_write_text, format_timestamp, utc_now

logger = logging.getLogger(__name__)

# Storage root resolution
LEARNING_DIR_ENV: str = "CONTINUOUS_LEARNING_DIR"
DEFAULT_LEARNING_DIR: Path = Path.home() / ".claude" / "continuous-learning"

# Identity file contents
SYSTEM_NAME: str = "continuous-learning"
IDENTITY_VERSION: str = "1.0.0"

# Observation store
ARCHIVE_THRESHOLD: int = 1000  # Seal the live log at this many records
DEFAULT_LOCK_TIMEOUT: float = 5.0  # Seconds before StoreLocked

# Confidence scoring
DEFAULT_FREQUENCY_NORMALIZER: int = 50  # frequencyScore saturates here
DEFAULT_CONTEXT_NORMALIZER: int = 5  # consistencyScore saturates at this many contexts
DEFAULT_RECENCY_HALF_LIFE_DAYS: float = 30.0

# File and directory names under the storage root
OBSERVATIONS_FILE_NAME: str = "observations.log"
ARCHIVE_DIR_NAME: str = "observations.archive"
IDENTITY_FILE_NAME: str = "identity.json"
INSTINCTS_DIR_NAME: str = "instincts"
EVOLVED_DIR_NAME: str = "evolved"
CHECKPOINTS_DIR_NAME: str = "checkpoints"

# Lock files, one per store
OBSERVATIONS_LOCK: str = ".observations.lock"
INSTINCTS_LOCK: str = ".instincts.lock"
EVOLVED_LOCK: str = ".evolved.lock"


@dataclass(frozen=True)
class EvolutionThreshold:
    """Gate an instinct must clear to evolve into one artifact kind."""

    min_confidence: float
    min_observations: int

    def admits(self, confidence: float, observation_count: int) -> bool:
        return confidence >= self.min_confidence and observation_count >= self.min_observations

    def to_dict(self) -> dict[str, Any]:
        return {
            "min_confidence": self.min_confidence,
            "min_observations": self.min_observations,
        }


DEFAULT_THRESHOLDS: dict[ArtifactKind, EvolutionThreshold] = {
    ArtifactKind.SKILL: EvolutionThreshold(min_confidence=0.85, min_observations=20),
    ArtifactKind.COMMAND: EvolutionThreshold(min_confidence=0.90, min_observations=30),
    ArtifactKind.AGENT: EvolutionThreshold(min_confidence=0.95, min_observations=50),
}

# Instinct category -> artifact kind; categories not listed map to skills
DEFAULT_ARTIFACT_KINDS: dict[str, ArtifactKind] = {
    "skill": ArtifactKind.SKILL,
    "command": ArtifactKind.COMMAND,
    "agent": ArtifactKind.AGENT,
    "workflow": ArtifactKind.SKILL,
    "error-fix": ArtifactKind.COMMAND,
}


def resolve_storage_root(explicit: Path | None = None) -> Path:
    """Pick the storage root: explicit path, then environment, then default."""
    if explicit is not None:
        return Path(explicit).expanduser()
    env_value = os.environ.get(LEARNING_DIR_ENV)
    if env_value:
        return Path(env_value).expanduser()
    return DEFAULT_LEARNING_DIR


def get_observations_file(root: Path) -> Path:
    """Path to <root>/observations.log (the live log)."""
    return root / OBSERVATIONS_FILE_NAME


def get_archive_dir(root: Path) -> Path:
    """Path to <root>/observations.archive/."""
    return root / ARCHIVE_DIR_NAME


def get_identity_file(root: Path) -> Path:
    return root / IDENTITY_FILE_NAME


def get_instincts_dir(root: Path) -> Path:
    return root / INSTINCTS_DIR_NAME


def get_personal_dir(root: Path) -> Path:
    """Path to <root>/instincts/personal/ (written by the processor)."""
    return get_instincts_dir(root) / "personal"


def get_inherited_dir(root: Path) -> Path:
    """Path to <root>/instincts/inherited/ (read-only imports)."""
    return get_instincts_dir(root) / "inherited"


def get_evolved_dir(root: Path) -> Path:
    return root / EVOLVED_DIR_NAME


def get_evolved_output_dir(kind: ArtifactKind, root: Path) -> Path:
    """Get the output directory for one artifact kind.

    Args:
        kind: Kind of artifact.
        root: Storage root.

    Returns:
        Path to <root>/evolved/<skills|commands|agents>/
    """
    return get_evolved_dir(root) / kind.directory


def get_checkpoints_dir(root: Path) -> Path:
    return root / CHECKPOINTS_DIR_NAME


def init_storage(root: Path) -> None:
    """Create the storage directory tree if it doesn't exist yet."""
    dirs = [
        root,
        get_archive_dir(root),
        get_personal_dir(root),
        get_inherited_dir(root),
        get_checkpoints_dir(root),
    ]
    dirs.extend(get_evolved_output_dir(kind, root) for kind in ArtifactKind)
    for directory in dirs:
        directory.mkdir(parents=True, exist_ok=True, mode=0o700)


@dataclass(frozen=True)
class LearningConfig:
    """Process-wide settings read by every pipeline component.

    Attributes:
        storage_root: Directory owning all pipeline state.
        enabled_categories: Observation type names accepted by append.
        thresholds: Evolution gate per artifact kind.
        normalizer: Observation count at which frequencyScore saturates.
        context_normalizer: Distinct contexts at which consistencyScore saturates.
        recency_half_life_days: Half-life of recencyScore.
        archive_threshold: Live-log record count that triggers sealing.
        lock_timeout: Seconds to wait for a store lock.
        artifact_kinds: Instinct category -> artifact kind overrides.
        created_at: When identity.json was first written.
    """

    storage_root: Path
    enabled_categories: tuple[str, ...] = tuple(t.value for t in ObservationType)
    thresholds: dict[ArtifactKind, EvolutionThreshold] = field(
        default_factory=lambda: dict(DEFAULT_THRESHOLDS)
    )
    normalizer: int = DEFAULT_FREQUENCY_NORMALIZER
    context_normalizer: int = DEFAULT_CONTEXT_NORMALIZER
    recency_half_life_days: float = DEFAULT_RECENCY_HALF_LIFE_DAYS
    archive_threshold: int = ARCHIVE_THRESHOLD
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    artifact_kinds: dict[str, ArtifactKind] = field(
        default_factory=lambda: dict(DEFAULT_ARTIFACT_KINDS)
    )
    created_at: str | None = None

    def is_enabled(self, obs_type: ObservationType) -> bool:
        return obs_type.value in self.enabled_categories

    def threshold_for(self, kind: ArtifactKind) -> EvolutionThreshold:
        return self.thresholds.get(kind, DEFAULT_THRESHOLDS[kind])

    def artifact_kind_for(self, category: str) -> ArtifactKind:
        return self.artifact_kinds.get(category, ArtifactKind.SKILL)

    def to_identity(self) -> dict[str, Any]:
        """Encode as the identity.json object."""
        return {
            "system": SYSTEM_NAME,
            "version": IDENTITY_VERSION,
            "created_at": self.created_at,
            "storageRoot": str(self.storage_root),
            "enabledCategories": list(self.enabled_categories),
            "thresholds": {
                kind.value: threshold.to_dict()
                for kind, threshold in sorted(self.thresholds.items(), key=lambda kv: kv[0].value)
            },
            "normalizer": self.normalizer,
            "context_normalizer": self.context_normalizer,
            "recency_half_life_days": self.recency_half_life_days,
            "archive_threshold": self.archive_threshold,
            "lock_timeout": self.lock_timeout,
            "artifact_kinds": {
                category: kind.value for category, kind in sorted(self.artifact_kinds.items())
            },
        }

    @classmethod
    def from_identity(cls, data: Any, storage_root: Path) -> "LearningConfig":
        """Decode identity.json, falling back to defaults for missing keys.

        Raises:
            ConfigError: If a present value is invalid.
        """
        if not isinstance(data, Mapping):
            raise ConfigError("identity.json must contain a JSON object")

        config = cls(storage_root=storage_root, created_at=data.get("created_at"))
        try:
            if "enabledCategories" in data:
                config = replace(
                    config, enabled_categories=_parse_categories(data["enabledCategories"])
                )
            if "thresholds" in data:
                config = replace(config, thresholds=_parse_thresholds(data["thresholds"]))
            if "artifact_kinds" in data:
                config = replace(config, artifact_kinds=_parse_artifact_kinds(data["artifact_kinds"]))
            for key in _SCALAR_KEYS:
                if key in data:
                    config = replace(config, **{key: _parse_scalar(key, data[key])})
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Invalid identity.json: {e}") from e
        return config

    def with_value(self, key: str, value: str) -> "LearningConfig":
        """Return a copy with one setting changed from its string form.

        Keys are scalar names (e.g. "normalizer"), "enabled_categories"
        (comma-separated), "thresholds.<kind>.<min_confidence|min_observations>"
        or "artifact_kinds.<category>".

        Raises:
            ConfigError: If the key is unknown or the value invalid.
        """
        try:
            if key in _SCALAR_KEYS:
                return replace(self, **{key: _parse_scalar(key, value)})
            if key == "enabled_categories":
                parts = [p.strip() for p in value.split(",") if p.strip()]
                return replace(self, enabled_categories=_parse_categories(parts))
            if key.startswith("thresholds."):
                _, kind_name, attr = key.split(".", 2)
                kind = ArtifactKind(kind_name)
                current = self.threshold_for(kind).to_dict()
                if attr not in current:
                    raise ConfigError(f"Unknown configuration key: {key}")
                current[attr] = value
                thresholds = dict(self.thresholds)
                thresholds[kind] = _parse_threshold(current)
                return replace(self, thresholds=thresholds)
            if key.startswith("artifact_kinds."):
                category = key.split(".", 1)[1]
                kinds = dict(self.artifact_kinds)
                kinds[category] = ArtifactKind(value)
                return replace(self, artifact_kinds=kinds)
        except ConfigError:
            raise
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid value for {key}: {e}") from e
        raise ConfigError(f"Unknown configuration key: {key}")


_SCALAR_KEYS: dict[str, type] = {
    "normalizer": int,
    "context_normalizer": int,
    "recency_half_life_days": float,
    "archive_threshold": int,
    "lock_timeout": float,
}


def _parse_scalar(key: str, value: Any) -> int | float:
    if isinstance(value, bool):
        raise ValueError(f"{key} must be a number")
    parsed = _SCALAR_KEYS[key](value)
    if parsed <= 0:
        raise ValueError(f"{key} must be positive")
    return parsed


def _parse_categories(value: Any) -> tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        raise ValueError("enabledCategories must be a list")
    known = {t.value for t in ObservationType}
    unknown = [v for v in value if v not in known]
    if unknown:
        raise ValueError(f"unknown observation categories: {unknown}")
    return tuple(value)


def _parse_threshold(value: Any) -> EvolutionThreshold:
    if not isinstance(value, Mapping):
        raise ValueError("threshold must be an object")
    min_confidence = float(value["min_confidence"])
    min_observations = int(value["min_observations"])
    if not 0.0 <= min_confidence <= 1.0:
        raise ValueError("min_confidence must be within [0, 1]")
    if min_observations < 0:
        raise ValueError("min_observations must be non-negative")
    return EvolutionThreshold(min_confidence=min_confidence, min_observations=min_observations)


def _parse_thresholds(value: Any) -> dict[ArtifactKind, EvolutionThreshold]:
    if not isinstance(value, Mapping):
        raise ValueError("thresholds must be an object")
    thresholds = dict(DEFAULT_THRESHOLDS)
    for kind_name, threshold in value.items():
        thresholds[ArtifactKind(kind_name)] = _parse_threshold(threshold)
    return thresholds


def _parse_artifact_kinds(value: Any) -> dict[str, ArtifactKind]:
    if not isinstance(value, Mapping):
        raise ValueError("artifact_kinds must be an object")
    kinds = dict(DEFAULT_ARTIFACT_KINDS)
    for category, kind_name in value.items():
        kinds[str(category)] = ArtifactKind(kind_name)
    return kinds


def load_config(root: Path | None = None) -> LearningConfig:
    """Load the configuration for a storage root, initializing it on first run.

    Args:
        root: Storage root; resolved via resolve_storage_root() when None.

    Returns:
        The LearningConfig stored in identity.json.

    Raises:
        ConfigError: If identity.json exists but is unreadable or invalid.
    """
    storage_root = resolve_storage_root(root)
    init_storage(storage_root)
    identity_file = get_identity_file(storage_root)

    if not identity_file.exists():
        config = LearningConfig(storage_root=storage_root, created_at=format_timestamp(utc_now()))
        save_config(config)
        logger.info("Initialized learning storage at %s", storage_root)
        return config

    try:
        data = json.loads(identity_file.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Failed to read {identity_file}: {e}") from e

    return LearningConfig.from_identity(data, storage_root)


def save_config(config: LearningConfig) -> None:
    """Write identity.json atomically. Only administrative actions call this."""
    identity_file = get_identity_file(config.storage_root)
    atomic_write_text(identity_file, json.dumps(config.to_identity(), indent=2) + "\n")
