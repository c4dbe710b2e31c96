"""Tests for continuous_learning.evolution module.

Tests cover:
- Generating skill, command and agent documents
- Evolution gates (confidence and observation count)
- Dry runs, index and log bookkeeping
- Stale flagging when an instinct falls below its gate
- Synthesis failures and forced single-instinct evolution
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _instinct(
    instinct_id: str = "tool_use-bash-00000000",
    category: str = "workflow",
    confidence: float = 0.9,
    count: int = 30,
):
    from continuous_learning.models import Instinct, InstinctEvidence

    return Instinct(
        id=instinct_id,
        pattern="tool_use:bash",
        description="uses the bash tool",
        category=category,
        confidence=confidence,
        evidence=InstinctEvidence(
            observation_count=count,
            success_rate=0.9,
            last_observed=NOW,
            first_observed=NOW,
            context_count=2,
        ),
        created_at=NOW,
        updated_at=NOW,
    )


def _engine(tmp_path: Path, *instincts):
    from continuous_learning.config import load_config
    from continuous_learning.evolution import EvolutionEngine
    from continuous_learning.instinct_store import instinct_file_name, serialize_instinct

    config = load_config(tmp_path)
    personal = tmp_path / "instincts" / "personal"
    for instinct in instincts:
        (personal / instinct_file_name(instinct.id)).write_text(serialize_instinct(instinct))
    return EvolutionEngine(config)


def _evolved_files(tmp_path: Path) -> dict[str, bytes]:
    return {
        str(p.relative_to(tmp_path)): p.read_bytes()
        for p in sorted((tmp_path / "evolved").rglob("*"))
        if p.is_file()
    }


class TestGenerators:
    """Tests for the document templates."""

    def test_skill_has_frontmatter_and_provenance(self):
        """A skill should carry frontmatter naming it and a Provenance section."""
        from continuous_learning.evolution import generate_skill

        content = generate_skill(_instinct())

        assert content.startswith("---\nname: skill-tool_use-bash-00000000\n")
        assert "# Uses the bash tool" in content
        assert "## Provenance" in content
        assert "- Source instinct: `tool_use-bash-00000000`" in content
        assert "- Observations: 30" in content

    def test_command_format(self):
        """A command should open with the learned-pattern sentence."""
        from continuous_learning.evolution import generate_command

        content = generate_command(_instinct())
        assert "I'll apply the learned command-tool_use-bash-00000000 pattern" in content
        assert "## Prerequisites" in content

    def test_agent_format(self):
        """An agent should list its tools and a process flow."""
        from continuous_learning.evolution import generate_agent

        content = generate_agent(_instinct())
        assert "tools: Bash, Read, Grep, Glob" in content
        assert "## Process Flow" in content

    def test_description_is_quoted_in_frontmatter(self):
        """Descriptions with YAML-significant characters should be quoted."""
        from dataclasses import replace

        from continuous_learning.evolution import generate_skill

        instinct = replace(_instinct(), description='runs "make": then exits')
        content = generate_skill(instinct)
        assert 'description: "Runs \\"make\\": then exits.' in content


class TestGates:
    """Tests for evolution gating."""

    def test_below_confidence_not_evolved(self, tmp_path: Path):
        """0.84 confidence with 25 observations should not become a skill."""
        engine = _engine(tmp_path, _instinct(confidence=0.84, count=25))
        result = engine.evolve()
        assert result.evolved == []
        assert result.skipped == ["tool_use-bash-00000000"]

    def test_below_count_not_evolved(self, tmp_path: Path):
        """0.86 confidence with 15 observations should not become a skill."""
        engine = _engine(tmp_path, _instinct(confidence=0.86, count=15))
        result = engine.evolve()
        assert result.evolved == []
        assert result.skipped == ["tool_use-bash-00000000"]

    def test_candidates_report_eligibility(self, tmp_path: Path):
        """candidates should report each instinct against its gate."""
        engine = _engine(
            tmp_path,
            _instinct("a-00000000", confidence=0.9, count=30),
            _instinct("b-00000000", category="error-fix", confidence=0.85, count=40),
        )

        candidates = {c.instinct_id: c for c in engine.candidates()}

        assert candidates["a-00000000"].eligible is True
        assert candidates["a-00000000"].kind.value == "skill"
        assert candidates["b-00000000"].eligible is False
        assert candidates["b-00000000"].to_dict()["min_confidence"] == 0.90


class TestEvolve:
    """Tests for EvolutionEngine.evolve."""

    def test_dry_run_writes_nothing(self, tmp_path: Path):
        """A dry run should report the agent it would create and touch no files."""
        engine = _engine(tmp_path, _instinct("deploy-00000000", category="agent", confidence=0.95, count=60))
        before = _evolved_files(tmp_path)

        result = engine.evolve(dry_run=True)

        assert result.to_dict()["evolved"] == ["agent-deploy-00000000"]
        assert result.skipped == []
        assert result.dry_run is True
        assert _evolved_files(tmp_path) == before
        assert list((tmp_path / "evolved" / "agents").iterdir()) == []

    def test_writes_artifact_index_and_log(self, tmp_path: Path):
        """A real run should write the document, an index entry and a log line."""
        engine = _engine(tmp_path, _instinct())

        result = engine.evolve()

        assert result.evolved == ["skill-tool_use-bash-00000000"]
        path = tmp_path / "evolved" / "skills" / "skill-tool_use-bash-00000000.md"
        assert "## Provenance" in path.read_text()

        index = engine.load_index()
        artifact = index["skill-tool_use-bash-00000000"]
        assert artifact.source_instinct_id == "tool_use-bash-00000000"
        assert artifact.path == "evolved/skills/skill-tool_use-bash-00000000.md"
        assert artifact.stale is False
        assert artifact.updated_at is None

        log = [json.loads(line) for line in (tmp_path / "evolved" / "evolution-log.jsonl").read_text().splitlines()]
        assert [entry["action"] for entry in log] == ["created"]

    def test_rerun_leaves_files_untouched(self, tmp_path: Path):
        """Evolving again with nothing changed should not rewrite anything."""
        engine = _engine(tmp_path, _instinct())
        engine.evolve()
        before = _evolved_files(tmp_path)

        result = engine.evolve()

        assert result.evolved == ["skill-tool_use-bash-00000000"]
        assert _evolved_files(tmp_path) == before

    def test_changed_instinct_refreshes_artifact(self, tmp_path: Path):
        """A confidence change should regenerate the document and set updated_at."""
        from continuous_learning.instinct_store import instinct_file_name, serialize_instinct

        engine = _engine(tmp_path, _instinct(confidence=0.9))
        engine.evolve()
        created_at = engine.load_index()["skill-tool_use-bash-00000000"].created_at

        (tmp_path / "instincts" / "personal" / instinct_file_name("tool_use-bash-00000000")).write_text(
            serialize_instinct(_instinct(confidence=0.95))
        )
        engine.evolve()

        artifact = engine.load_index()["skill-tool_use-bash-00000000"]
        assert artifact.confidence == 0.95
        assert artifact.created_at == created_at
        assert artifact.updated_at is not None

    def test_fallen_instinct_flags_artifact_stale(self, tmp_path: Path):
        """An artifact whose instinct drops below its gate should be flagged, not deleted."""
        from continuous_learning.instinct_store import instinct_file_name, serialize_instinct

        engine = _engine(tmp_path, _instinct(confidence=0.9))
        engine.evolve()
        path = tmp_path / "evolved" / "skills" / "skill-tool_use-bash-00000000.md"
        content = path.read_bytes()

        (tmp_path / "instincts" / "personal" / instinct_file_name("tool_use-bash-00000000")).write_text(
            serialize_instinct(_instinct(confidence=0.5))
        )
        result = engine.evolve()

        assert result.stale == ["skill-tool_use-bash-00000000"]
        assert path.read_bytes() == content
        assert engine.load_index()["skill-tool_use-bash-00000000"].stale is True

    def test_deleted_instinct_flags_artifact_stale(self, tmp_path: Path):
        """An artifact whose instinct is gone should be flagged stale."""
        from continuous_learning.instinct_store import instinct_file_name

        engine = _engine(tmp_path, _instinct())
        engine.evolve()
        (tmp_path / "instincts" / "personal" / instinct_file_name("tool_use-bash-00000000")).unlink()

        result = engine.evolve(dry_run=True)
        assert result.stale == ["skill-tool_use-bash-00000000"]
        assert engine.load_index()["skill-tool_use-bash-00000000"].stale is False

    def test_category_filter(self, tmp_path: Path):
        """Only instincts of the filtered category or kind should be considered."""
        engine = _engine(
            tmp_path,
            _instinct("a-00000000", category="workflow"),
            _instinct("b-00000000", category="error-fix", confidence=0.95),
        )

        assert engine.evolve(dry_run=True, category_filter="error-fix").evolved == ["command-b-00000000"]
        assert engine.evolve(dry_run=True, category_filter="skill").evolved == ["skill-a-00000000"]

    def test_synthesis_failure_skips_instinct(self, tmp_path: Path, caplog):
        """A template failure should skip that instinct and count the failure."""
        from continuous_learning.evolution import GENERATORS
        from continuous_learning.models import ArtifactKind

        def broken(instinct):
            raise ValueError("template exploded")

        engine = _engine(
            tmp_path,
            _instinct("a-00000000"),
            _instinct("b-00000000", category="error-fix", confidence=0.95),
        )

        with patch.dict(GENERATORS, {ArtifactKind.COMMAND: broken}):
            with caplog.at_level(logging.WARNING, logger="continuous_learning.evolution"):
                result = engine.evolve()

        assert result.evolved == ["skill-a-00000000"]
        assert result.skipped == ["b-00000000"]
        assert result.failed_count == 1
        assert "template exploded" in caplog.text
        assert list((tmp_path / "evolved" / "commands").iterdir()) == []

    def test_symlinked_target_is_refused(self, tmp_path: Path):
        """An artifact path that is a symlink should not be written through."""
        engine = _engine(tmp_path, _instinct())
        outside = tmp_path / "outside.md"
        outside.write_text("keep")
        (tmp_path / "evolved" / "skills" / "skill-tool_use-bash-00000000.md").symlink_to(outside)

        result = engine.evolve()

        assert result.evolved == []
        assert result.failed_count == 1
        assert outside.read_text() == "keep"


class TestEvolveInstinct:
    """Tests for EvolutionEngine.evolve_instinct."""

    def test_bypasses_gate(self, tmp_path: Path):
        """A forced evolution should write the artifact regardless of confidence."""
        engine = _engine(tmp_path, _instinct(confidence=0.3, count=2))

        artifact = engine.evolve_instinct("tool_use-bash-00000000")

        assert artifact.id == "skill-tool_use-bash-00000000"
        assert "## Provenance" in artifact.content
        assert (tmp_path / artifact.path).exists()
        log = (tmp_path / "evolved" / "evolution-log.jsonl").read_text()
        assert '"forced": true' in log

    def test_explicit_kind(self, tmp_path: Path):
        """An explicit kind should override the category mapping."""
        from continuous_learning.models import ArtifactKind

        engine = _engine(tmp_path, _instinct())
        artifact = engine.evolve_instinct("tool_use-bash-00000000", ArtifactKind.AGENT)
        assert artifact.path == "evolved/agents/agent-tool_use-bash-00000000.md"

    def test_missing_instinct_raises(self, tmp_path: Path):
        """An unknown id should raise InstinctNotFound."""
        from continuous_learning.errors import InstinctNotFound

        engine = _engine(tmp_path)
        with pytest.raises(InstinctNotFound, match="Instinct not found: nope"):
            engine.evolve_instinct("nope")
