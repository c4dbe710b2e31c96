"""Error taxonomy for the continuous-learning pipeline.

Per-record errors (CorruptRecord, EvolutionSynthesisError) are caught inside
batch jobs, logged and skipped. Per-call errors (InvalidObservation,
StoreLocked, CheckpointNotFound, ConfigError) propagate to the caller.
"""


class LearningError(Exception):
    """Base class for errors raised by the learning pipeline."""

    code: str = "LearningError"

    def to_dict(self) -> dict[str, str]:
        """Return the structured form printed by the CLI on stderr."""
        return {"error": self.code, "message": str(self)}


class InvalidObservation(LearningError, ValueError):
    """Observation type or payload rejected before write."""

    code = "InvalidObservation"


class StoreLocked(LearningError):
    """A store lock could not be acquired within the configured timeout."""

    code = "StoreLocked"


class CorruptRecord(LearningError, ValueError):
    """A stored line could not be decoded into an Observation."""

    code = "CorruptRecord"


class CheckpointNotFound(LearningError, KeyError):
    """No checkpoint exists with the requested id."""

    code = "CheckpointNotFound"

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message
        return str(self.args[0]) if self.args else ""


class EvolutionSynthesisError(LearningError):
    """Rendering an artifact template failed for one instinct."""

    code = "EvolutionSynthesisError"


class ConfigError(LearningError, ValueError):
    """identity.json holds an invalid value."""

    code = "ConfigError"


class InstinctNotFound(LearningError, KeyError):
    """No personal or inherited instinct exists with the requested id."""

    code = "InstinctNotFound"

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class InvalidArchive(LearningError, ValueError):
    """A checkpoint archive is unreadable or contains unsafe members."""

    code = "InvalidArchive"


class CheckpointExportError(LearningError, OSError):
    """A checkpoint tarball could not be written."""

    code = "CheckpointExportError"
