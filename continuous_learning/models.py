"""Data models for the continuous-learning pipeline.

This module contains the core data structures:
- ObservationType: Enum of captured event types
- Payload variants: one frozen dataclass per ObservationType, plus UnknownData
- ObservationContext / Observation: one immutable captured event
- InstinctEvidence / ScoreBreakdown / Instinct: an aggregated, scored pattern
- ArtifactKind / EvolvedArtifact: a generated knowledge document
- CheckpointInfo: manifest of a stored checkpoint
"""

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Literal, Union

from continuous_learning.errors import CorruptRecord
from continuous_learning.utils import format_timestamp, parse_timestamp

# Where an instinct came from: produced locally or imported read-only
InstinctSource = Literal["personal", "inherited"]

# Record format version written into every observation line
OBSERVATION_FORMAT_VERSION: str = "1.0"


class ObservationType(Enum):
    """Types of events the observation store accepts."""

    TOOL_USE = "tool_use"
    WORKFLOW_PATTERN = "workflow_pattern"
    ERROR_OCCURRENCE = "error_occurrence"
    ERROR_FIX = "error_fix"
    FRAMEWORK_SELECTION = "framework_selection"
    NODE_USAGE = "node_usage"
    CONNECTION_PATTERN = "connection_pattern"
    TEST_PATTERN = "test_pattern"
    DOMAIN_MODEL = "domain_model"
    SESSION_SUMMARY = "session_summary"

    @classmethod
    def parse(cls, value: str) -> "ObservationType | None":
        """Return the member whose value is `value`, or None."""
        try:
            return cls(value)
        except ValueError:
            return None


class ArtifactKind(Enum):
    """Kinds of documents the evolution engine can produce."""

    SKILL = "skill"
    COMMAND = "command"
    AGENT = "agent"

    @property
    def directory(self) -> str:
        """Name of the sub-directory of evolved/ holding this kind."""
        return f"{self.value}s"


# Field schema entry: (accepted JSON types, required)
FieldSpec = tuple[tuple[type, ...], bool]


class _Payload:
    """Shared decoding and encoding for observation payload variants.

    Subclasses are frozen dataclasses declaring `_schema`, a mapping from
    field name to FieldSpec. Keys not in the schema are kept in `extra`
    so a record round-trips unchanged.
    """

    _schema: ClassVar[dict[str, FieldSpec]] = {}

    @classmethod
    def from_dict(cls, data: Any) -> Any:
        """Decode a JSON object into this variant.

        Raises:
            ValueError: If data is not an object or a field has the wrong shape.
        """
        if not isinstance(data, Mapping):
            raise ValueError(f"data must be an object, got {type(data).__name__}")

        kwargs: dict[str, Any] = {}
        for name, (types, required) in cls._schema.items():
            value = data.get(name)
            if value is None:
                if required:
                    raise ValueError(f"missing required field '{name}'")
                continue
            # bool is a subclass of int; only accept it where bool is declared
            if isinstance(value, bool) and bool not in types:
                raise ValueError(f"field '{name}' has wrong type bool")
            if not isinstance(value, types):
                expected = "/".join(t.__name__ for t in types)
                raise ValueError(
                    f"field '{name}' must be {expected}, got {type(value).__name__}"
                )
            if isinstance(value, str) and required and not value.strip():
                raise ValueError(f"field '{name}' must not be empty")
            kwargs[name] = value

        kwargs = cls._coerce(kwargs)
        kwargs["extra"] = {k: v for k, v in data.items() if k not in cls._schema}
        return cls(**kwargs)

    @classmethod
    def _coerce(cls, kwargs: dict[str, Any]) -> dict[str, Any]:
        return kwargs

    def to_dict(self) -> dict[str, Any]:
        """Encode this payload as a JSON-compatible dict."""
        result: dict[str, Any] = dict(getattr(self, "extra", {}))
        for name in self._schema:
            value = getattr(self, name)
            if value is None:
                continue
            result[name] = list(value) if isinstance(value, tuple) else value
        return result

    @property
    def succeeded(self) -> bool | None:
        """Outcome carried by the payload, or None if it carries none."""
        return None


@dataclass(frozen=True)
class ToolUseData(_Payload):
    """A single tool invocation."""

    _schema: ClassVar[dict[str, FieldSpec]] = {
        "tool": ((str,), True),
        "success": ((bool,), False),
        "duration_ms": ((int, float), False),
    }

    tool: str
    success: bool | None = None
    duration_ms: float | None = None
    extra: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def succeeded(self) -> bool | None:
        return self.success


@dataclass(frozen=True)
class WorkflowPatternData(_Payload):
    """An ordered sequence of workflow nodes that was built or run."""

    _schema: ClassVar[dict[str, FieldSpec]] = {
        "nodes": ((list, tuple), True),
        "success": ((bool,), False),
    }

    nodes: tuple[str, ...]
    success: bool | None = None
    extra: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def _coerce(cls, kwargs: dict[str, Any]) -> dict[str, Any]:
        nodes = kwargs["nodes"]
        if not nodes:
            raise ValueError("field 'nodes' must not be empty")
        if not all(isinstance(node, str) and node.strip() for node in nodes):
            raise ValueError("field 'nodes' must contain non-empty strings")
        kwargs["nodes"] = tuple(nodes)
        return kwargs

    @property
    def succeeded(self) -> bool | None:
        return self.success


@dataclass(frozen=True)
class ErrorOccurrenceData(_Payload):
    """An error seen during a session."""

    _schema: ClassVar[dict[str, FieldSpec]] = {
        "error_type": ((str,), True),
        "message": ((str,), False),
    }

    error_type: str
    message: str | None = None
    extra: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class ErrorFixData(_Payload):
    """A resolution applied to an error class."""

    _schema: ClassVar[dict[str, FieldSpec]] = {
        "error_type": ((str,), True),
        "fix_type": ((str,), True),
        "success": ((bool,), True),
    }

    error_type: str
    fix_type: str
    success: bool
    extra: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def succeeded(self) -> bool | None:
        return self.success


@dataclass(frozen=True)
class FrameworkSelectionData(_Payload):
    """Framework chosen for a kind of project."""

    _schema: ClassVar[dict[str, FieldSpec]] = {
        "project_type": ((str,), True),
        "framework": ((str,), True),
    }

    project_type: str
    framework: str
    extra: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class NodeUsageData(_Payload):
    """Use of a single node type."""

    _schema: ClassVar[dict[str, FieldSpec]] = {
        "node_type": ((str,), True),
        "success": ((bool,), False),
    }

    node_type: str
    success: bool | None = None
    extra: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def succeeded(self) -> bool | None:
        return self.success


@dataclass(frozen=True)
class ConnectionPatternData(_Payload):
    """A connection wired between two nodes."""

    _schema: ClassVar[dict[str, FieldSpec]] = {
        "source": ((str,), True),
        "target": ((str,), True),
    }

    source: str
    target: str
    extra: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class TestPatternData(_Payload):
    """A test run of a given type."""

    __test__ = False  # not a pytest test class

    _schema: ClassVar[dict[str, FieldSpec]] = {
        "test_type": ((str,), True),
        "passed": ((bool,), True),
        "framework": ((str,), False),
    }

    test_type: str
    passed: bool
    framework: str | None = None
    extra: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def succeeded(self) -> bool | None:
        return self.passed


@dataclass(frozen=True)
class DomainModelData(_Payload):
    """An operation performed against a domain model."""

    _schema: ClassVar[dict[str, FieldSpec]] = {
        "model": ((str,), True),
        "operation": ((str,), True),
        "success": ((bool,), False),
    }

    model: str
    operation: str
    success: bool | None = None
    extra: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def succeeded(self) -> bool | None:
        return self.success


@dataclass(frozen=True)
class SessionSummaryData(_Payload):
    """End-of-session counters."""

    _schema: ClassVar[dict[str, FieldSpec]] = {
        "tool_calls": ((int,), False),
        "errors": ((int,), False),
        "duration_seconds": ((int, float), False),
        "summary": ((str,), False),
    }

    tool_calls: int | None = None
    errors: int | None = None
    duration_seconds: float | None = None
    summary: str | None = None
    extra: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class UnknownData:
    """Payload of a stored record that no variant could decode.

    Produced on read for types written by a newer version, and for records
    of a known type whose payload does not match that type's shape.

    Attributes:
        raw: The payload exactly as stored.
        reason: Why decoding into a known variant failed.
    """

    raw: Any
    reason: str = ""

    def to_dict(self) -> Any:
        return self.raw

    @property
    def succeeded(self) -> bool | None:
        return None


Payload = Union[
    ToolUseData,
    WorkflowPatternData,
    ErrorOccurrenceData,
    ErrorFixData,
    FrameworkSelectionData,
    NodeUsageData,
    ConnectionPatternData,
    TestPatternData,
    DomainModelData,
    SessionSummaryData,
    UnknownData,
]

PAYLOAD_TYPES: dict[ObservationType, type] = {
    ObservationType.TOOL_USE: ToolUseData,
    ObservationType.WORKFLOW_PATTERN: WorkflowPatternData,
    ObservationType.ERROR_OCCURRENCE: ErrorOccurrenceData,
    ObservationType.ERROR_FIX: ErrorFixData,
    ObservationType.FRAMEWORK_SELECTION: FrameworkSelectionData,
    ObservationType.NODE_USAGE: NodeUsageData,
    ObservationType.CONNECTION_PATTERN: ConnectionPatternData,
    ObservationType.TEST_PATTERN: TestPatternData,
    ObservationType.DOMAIN_MODEL: DomainModelData,
    ObservationType.SESSION_SUMMARY: SessionSummaryData,
}


def decode_payload(obs_type: ObservationType, data: Any) -> Payload:
    """Decode data into the variant for obs_type.

    Raises:
        ValueError: If data does not match the variant's shape.
    """
    return PAYLOAD_TYPES[obs_type].from_dict(data)


@dataclass(frozen=True)
class ObservationContext:
    """Where an observation was captured.

    Attributes:
        session_id: Session identifier.
        cwd: Working-directory hint.
        framework: Detected-framework hint.
        extra: Any additional context keys, preserved as-is.
    """

    session_id: str = "unknown"
    cwd: str = ""
    framework: str = "unknown"
    extra: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_dict(cls, data: Any) -> "ObservationContext":
        if not isinstance(data, Mapping):
            return cls()
        known = {"session_id", "cwd", "framework"}
        return cls(
            session_id=str(data.get("session_id") or "unknown"),
            cwd=str(data.get("cwd") or ""),
            framework=str(data.get("framework") or "unknown"),
            extra={k: v for k, v in data.items() if k not in known},
        )

    def to_dict(self) -> dict[str, Any]:
        result = dict(self.extra)
        result.update(
            {"session_id": self.session_id, "cwd": self.cwd, "framework": self.framework}
        )
        return result

    @property
    def key(self) -> tuple[str, str]:
        """Identity of the context for cross-context consistency scoring."""
        return (self.session_id, self.cwd)


@dataclass(frozen=True)
class Observation:
    """One immutable captured event.

    Attributes:
        id: Time-ordered unique identifier.
        timestamp: Creation time (UTC).
        type: Type name as stored; may be a name this version doesn't know.
        data: Decoded payload variant.
        context: Capture context.
        source: Who captured the event (e.g. "hook", "cli").
    """

    id: str
    timestamp: datetime
    type: str
    data: Payload
    context: ObservationContext = field(default_factory=ObservationContext)
    source: str = "hook"

    @property
    def kind(self) -> ObservationType | None:
        """The ObservationType, or None for an unrecognized type name."""
        return ObservationType.parse(self.type)

    def to_record(self) -> dict[str, Any]:
        """Encode as the JSON object stored on one line."""
        return {
            "id": self.id,
            "timestamp": format_timestamp(self.timestamp),
            "type": self.type,
            "data": self.data.to_dict(),
            "context": self.context.to_dict(),
            "metadata": {"version": OBSERVATION_FORMAT_VERSION, "source": self.source},
        }

    @classmethod
    def from_record(cls, record: Any) -> "Observation":
        """Decode a stored JSON object.

        A known type with a non-conforming payload decodes to UnknownData
        rather than failing, so callers can decide what to do with it.

        Raises:
            CorruptRecord: If id, timestamp or type are missing or invalid.
        """
        if not isinstance(record, Mapping):
            raise CorruptRecord("record is not a JSON object")

        obs_id = record.get("id")
        obs_type = record.get("type")
        if not isinstance(obs_id, str) or not obs_id:
            raise CorruptRecord("record has no id")
        if not isinstance(obs_type, str) or not obs_type:
            raise CorruptRecord(f"record {obs_id} has no type")
        try:
            timestamp = parse_timestamp(record.get("timestamp"))
        except ValueError as e:
            raise CorruptRecord(f"record {obs_id} has invalid timestamp: {e}") from e

        raw_data = record.get("data")
        kind = ObservationType.parse(obs_type)
        data: Payload
        if kind is None:
            data = UnknownData(raw=raw_data, reason=f"unknown type '{obs_type}'")
        else:
            try:
                data = decode_payload(kind, raw_data)
            except ValueError as e:
                data = UnknownData(raw=raw_data, reason=str(e))

        metadata = record.get("metadata")
        source = "hook"
        if isinstance(metadata, Mapping) and isinstance(metadata.get("source"), str):
            source = metadata["source"]

        return cls(
            id=obs_id,
            timestamp=timestamp,
            type=obs_type,
            data=data,
            context=ObservationContext.from_dict(record.get("context")),
            source=source,
        )


@dataclass(frozen=True)
class InstinctEvidence:
    """Aggregate evidence behind an instinct."""

    observation_count: int
    success_rate: float
    last_observed: datetime
    first_observed: datetime
    context_count: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "observation_count": self.observation_count,
            "success_rate": self.success_rate,
            "last_observed": format_timestamp(self.last_observed),
            "first_observed": format_timestamp(self.first_observed),
            "context_count": self.context_count,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "InstinctEvidence":
        last_observed = parse_timestamp(data["last_observed"])
        return cls(
            observation_count=int(data["observation_count"]),
            success_rate=float(data["success_rate"]),
            last_observed=last_observed,
            first_observed=parse_timestamp(data.get("first_observed") or data["last_observed"]),
            context_count=int(data.get("context_count", 1)),
        )


@dataclass(frozen=True)
class ScoreBreakdown:
    """The four weighted components a confidence value was computed from."""

    frequency: float
    success: float
    recency: float
    consistency: float

    def to_dict(self) -> dict[str, float]:
        return {
            "frequency": self.frequency,
            "success": self.success,
            "recency": self.recency,
            "consistency": self.consistency,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ScoreBreakdown":
        return cls(
            frequency=float(data["frequency"]),
            success=float(data["success"]),
            recency=float(data["recency"]),
            consistency=float(data["consistency"]),
        )


@dataclass(frozen=True)
class Instinct:
    """A learned instinct with confidence scoring.

    Attributes:
        id: Stable identifier derived from pattern.
        pattern: Machine key identifying the behavior.
        description: Human-readable statement of the pattern.
        category: Instinct category (workflow, testing, ...).
        confidence: Score in [0, 1].
        evidence: Aggregate evidence.
        created_at: First time the pattern was observed.
        updated_at: Reference time of the processing run that produced it.
        scores: Component scores; None for imported instincts that lack them.
        source: "personal" or "inherited".
    """

    id: str
    pattern: str
    description: str
    category: str
    confidence: float
    evidence: InstinctEvidence
    created_at: datetime
    updated_at: datetime
    scores: ScoreBreakdown | None = None
    source: InstinctSource = "personal"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pattern": self.pattern,
            "description": self.description,
            "category": self.category,
            "confidence": self.confidence,
            "evidence": self.evidence.to_dict(),
            "scores": self.scores.to_dict() if self.scores else None,
            "source": self.source,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], source: InstinctSource = "personal") -> "Instinct":
        """Decode a stored instinct record.

        Raises:
            KeyError, ValueError, TypeError: If the record is malformed.
        """
        evidence = InstinctEvidence.from_dict(data["evidence"])
        scores = data.get("scores")
        return cls(
            id=str(data["id"]),
            pattern=str(data["pattern"]),
            description=str(data.get("description", data["pattern"])),
            category=str(data.get("category", "pattern")),
            confidence=float(data["confidence"]),
            evidence=evidence,
            created_at=parse_timestamp(data.get("created_at") or format_timestamp(evidence.first_observed)),
            updated_at=parse_timestamp(data.get("updated_at") or format_timestamp(evidence.last_observed)),
            scores=ScoreBreakdown.from_dict(scores) if scores else None,
            source=source,
        )

    def with_created_at(self, created_at: datetime) -> "Instinct":
        """Return a copy keeping an earlier creation time."""
        return replace(self, created_at=created_at)


@dataclass(frozen=True)
class EvolvedArtifact:
    """A generated knowledge document and its index metadata.

    Attributes:
        id: Artifact id ("<kind>-<instinct id>").
        source_instinct_id: Instinct the artifact was synthesized from.
        category: Kind of artifact.
        confidence: Instinct confidence at synthesis time.
        created_at: First synthesis time; preserved across regeneration.
        updated_at: Last regeneration time, None if never regenerated.
        stale: True once the source instinct fell below its gate.
        path: File path relative to the storage root.
        content: Rendered document; empty when loaded from the index only.
    """

    id: str
    source_instinct_id: str
    category: ArtifactKind
    confidence: float
    created_at: datetime
    path: str
    updated_at: datetime | None = None
    stale: bool = False
    content: str = ""

    def to_index_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_instinct_id": self.source_instinct_id,
            "category": self.category.value,
            "confidence": self.confidence,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at) if self.updated_at else None,
            "stale": self.stale,
            "path": self.path,
        }

    @classmethod
    def from_index_dict(cls, data: Mapping[str, Any]) -> "EvolvedArtifact":
        updated_at = data.get("updated_at")
        return cls(
            id=str(data["id"]),
            source_instinct_id=str(data["source_instinct_id"]),
            category=ArtifactKind(data["category"]),
            confidence=float(data["confidence"]),
            created_at=parse_timestamp(data["created_at"]),
            path=str(data["path"]),
            updated_at=parse_timestamp(updated_at) if updated_at else None,
            stale=bool(data.get("stale", False)),
        )


@dataclass(frozen=True)
class CheckpointInfo:
    """Manifest of a stored checkpoint."""

    id: str
    name: str
    created_at: datetime
    stats: dict[str, int] = field(default_factory=dict)
    imported_from: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "created_at": format_timestamp(self.created_at),
            "stats": dict(self.stats),
        }
        if self.imported_from:
            result["imported_from"] = self.imported_from
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CheckpointInfo":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            created_at=parse_timestamp(data["created_at"]),
            stats={k: int(v) for k, v in (data.get("stats") or {}).items()},
            imported_from=data.get("imported_from"),
        )
