"""Tests for continuous_learning.models module.

Tests cover:
- Payload variant decoding and validation
- Forward-compatible UnknownData for unknown types and bad payloads
- Observation record encoding and decoding
- Instinct and EvolvedArtifact serialization
"""

from datetime import datetime, timezone

import pytest

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _record(**overrides):
    record = {
        "id": "obs_1",
        "timestamp": "2026-03-01T12:00:00+00:00",
        "type": "tool_use",
        "data": {"tool": "Bash", "success": True},
        "context": {"session_id": "s1", "cwd": "/repo", "framework": "n8n"},
        "metadata": {"version": "1.0", "source": "hook"},
    }
    record.update(overrides)
    return record


class TestObservationType:
    """Tests for ObservationType enum."""

    def test_parse_known_value(self):
        """Known values should parse to their member."""
        from continuous_learning.models import ObservationType

        assert ObservationType.parse("error_fix") is ObservationType.ERROR_FIX

    def test_parse_unknown_value_returns_none(self):
        """Unknown values should parse to None."""
        from continuous_learning.models import ObservationType

        assert ObservationType.parse("telepathy") is None


class TestPayloadDecoding:
    """Tests for decode_payload and the payload variants."""

    def test_decodes_tool_use(self):
        """A valid tool_use payload should decode into ToolUseData."""
        from continuous_learning.models import ObservationType, ToolUseData, decode_payload

        payload = decode_payload(ObservationType.TOOL_USE, {"tool": "Edit", "success": False})
        assert isinstance(payload, ToolUseData)
        assert payload.tool == "Edit"
        assert payload.succeeded is False

    def test_missing_required_field_raises(self):
        """A payload without a required field should raise ValueError."""
        from continuous_learning.models import ObservationType, decode_payload

        with pytest.raises(ValueError, match="missing required field 'fix_type'"):
            decode_payload(ObservationType.ERROR_FIX, {"error_type": "E", "success": True})

    def test_wrong_type_raises(self):
        """A field of the wrong JSON type should raise ValueError."""
        from continuous_learning.models import ObservationType, decode_payload

        with pytest.raises(ValueError, match="must be str"):
            decode_payload(ObservationType.TOOL_USE, {"tool": 3})

    def test_bool_is_not_a_number(self):
        """A bool should be rejected where a number is expected."""
        from continuous_learning.models import ObservationType, decode_payload

        with pytest.raises(ValueError, match="wrong type bool"):
            decode_payload(ObservationType.TOOL_USE, {"tool": "Bash", "duration_ms": True})

    def test_empty_required_string_raises(self):
        """Required strings should not be blank."""
        from continuous_learning.models import ObservationType, decode_payload

        with pytest.raises(ValueError, match="must not be empty"):
            decode_payload(ObservationType.NODE_USAGE, {"node_type": "  "})

    def test_non_object_raises(self):
        """Data that isn't an object should raise ValueError."""
        from continuous_learning.models import ObservationType, decode_payload

        with pytest.raises(ValueError, match="must be an object"):
            decode_payload(ObservationType.TOOL_USE, ["Bash"])

    def test_workflow_nodes_become_tuple(self):
        """Workflow nodes should decode into an immutable tuple."""
        from continuous_learning.models import ObservationType, decode_payload

        payload = decode_payload(ObservationType.WORKFLOW_PATTERN, {"nodes": ["a", "b"]})
        assert payload.nodes == ("a", "b")
        assert payload.to_dict() == {"nodes": ["a", "b"]}

    def test_workflow_rejects_empty_nodes(self):
        """An empty node list should be rejected."""
        from continuous_learning.models import ObservationType, decode_payload

        with pytest.raises(ValueError, match="must not be empty"):
            decode_payload(ObservationType.WORKFLOW_PATTERN, {"nodes": []})

    def test_extra_keys_are_preserved(self):
        """Keys outside the schema should survive encoding."""
        from continuous_learning.models import ObservationType, decode_payload

        payload = decode_payload(ObservationType.TOOL_USE, {"tool": "Bash", "input": "ls"})
        assert payload.to_dict() == {"tool": "Bash", "input": "ls"}

    def test_test_pattern_success_is_passed(self):
        """test_pattern success should come from 'passed'."""
        from continuous_learning.models import ObservationType, decode_payload

        payload = decode_payload(ObservationType.TEST_PATTERN, {"test_type": "unit", "passed": False})
        assert payload.succeeded is False

    def test_types_without_outcome_have_no_success_signal(self):
        """Payloads without an outcome field should report None."""
        from continuous_learning.models import ObservationType, decode_payload

        payload = decode_payload(
            ObservationType.FRAMEWORK_SELECTION, {"project_type": "api", "framework": "fastapi"}
        )
        assert payload.succeeded is None


class TestObservationContext:
    """Tests for ObservationContext."""

    def test_defaults_for_missing_context(self):
        """Missing context should fall back to defaults."""
        from continuous_learning.models import ObservationContext

        context = ObservationContext.from_dict(None)
        assert context.session_id == "unknown"
        assert context.framework == "unknown"

    def test_key_is_session_and_cwd(self):
        """The context key should pair session id and working directory."""
        from continuous_learning.models import ObservationContext

        context = ObservationContext.from_dict({"session_id": "s", "cwd": "/x", "branch": "main"})
        assert context.key == ("s", "/x")
        assert context.to_dict()["branch"] == "main"


class TestObservationRecord:
    """Tests for Observation.to_record and from_record."""

    def test_from_record_decodes_payload(self):
        """A valid record should decode with its payload variant."""
        from continuous_learning.models import Observation, ToolUseData

        observation = Observation.from_record(_record())
        assert isinstance(observation.data, ToolUseData)
        assert observation.context.session_id == "s1"
        assert observation.timestamp == NOW

    def test_record_round_trips(self):
        """to_record should reproduce the stored record."""
        from continuous_learning.models import Observation

        record = _record()
        assert Observation.from_record(record).to_record() == record

    def test_unknown_type_decodes_to_unknown_data(self):
        """A type this version doesn't know should decode into UnknownData."""
        from continuous_learning.models import Observation, UnknownData

        observation = Observation.from_record(_record(type="future_type", data={"x": 1}))
        assert isinstance(observation.data, UnknownData)
        assert observation.kind is None
        assert observation.to_record()["data"] == {"x": 1}

    def test_bad_payload_decodes_to_unknown_data(self):
        """A known type with a non-conforming payload should decode into UnknownData."""
        from continuous_learning.models import Observation, UnknownData

        observation = Observation.from_record(_record(data={"success": True}))
        assert isinstance(observation.data, UnknownData)
        assert "tool" in observation.data.reason

    @pytest.mark.parametrize(
        "overrides",
        [{"id": None}, {"type": ""}, {"timestamp": "not-a-time"}],
    )
    def test_missing_core_fields_raise_corrupt_record(self, overrides):
        """Records without id, type or a valid timestamp are corrupt."""
        from continuous_learning.errors import CorruptRecord
        from continuous_learning.models import Observation

        with pytest.raises(CorruptRecord):
            Observation.from_record(_record(**overrides))

    def test_non_object_record_is_corrupt(self):
        """A JSON value that isn't an object is corrupt."""
        from continuous_learning.errors import CorruptRecord
        from continuous_learning.models import Observation

        with pytest.raises(CorruptRecord):
            Observation.from_record([1, 2])


class TestInstinct:
    """Tests for Instinct serialization."""

    def _instinct(self):
        from continuous_learning.models import Instinct, InstinctEvidence, ScoreBreakdown

        return Instinct(
            id="tool_use-bash-12345678",
            pattern="tool_use:bash",
            description="Uses the bash tool",
            category="workflow",
            confidence=0.9,
            evidence=InstinctEvidence(
                observation_count=60,
                success_rate=1.0,
                last_observed=NOW,
                first_observed=NOW,
                context_count=2,
            ),
            created_at=NOW,
            updated_at=NOW,
            scores=ScoreBreakdown(frequency=1.0, success=1.0, recency=1.0, consistency=0.4),
        )

    def test_round_trips_through_dict(self):
        """from_dict(to_dict()) should give back an equal instinct."""
        from continuous_learning.models import Instinct

        instinct = self._instinct()
        assert Instinct.from_dict(instinct.to_dict()) == instinct

    def test_from_dict_sets_source(self):
        """The loading directory decides the source."""
        from continuous_learning.models import Instinct

        loaded = Instinct.from_dict(self._instinct().to_dict(), source="inherited")
        assert loaded.source == "inherited"

    def test_from_dict_tolerates_missing_scores(self):
        """Imported instincts may lack component scores."""
        from continuous_learning.models import Instinct

        data = self._instinct().to_dict()
        data["scores"] = None
        assert Instinct.from_dict(data).scores is None

    def test_from_dict_rejects_missing_evidence(self):
        """A record without evidence is malformed."""
        from continuous_learning.models import Instinct

        data = self._instinct().to_dict()
        del data["evidence"]
        with pytest.raises(KeyError):
            Instinct.from_dict(data)


class TestEvolvedArtifact:
    """Tests for EvolvedArtifact index serialization."""

    def test_index_dict_round_trips(self):
        """Index entries should decode back to the same metadata."""
        from continuous_learning.models import ArtifactKind, EvolvedArtifact

        artifact = EvolvedArtifact(
            id="skill-x",
            source_instinct_id="x",
            category=ArtifactKind.SKILL,
            confidence=0.9,
            created_at=NOW,
            path="evolved/skills/skill-x.md",
            stale=True,
        )
        assert EvolvedArtifact.from_index_dict(artifact.to_index_dict()) == artifact

    def test_kind_directory(self):
        """Each kind should live in its plural directory."""
        from continuous_learning.models import ArtifactKind

        assert ArtifactKind.AGENT.directory == "agents"
