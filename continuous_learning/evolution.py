"""Evolution engine: materializes high-confidence instincts as documents.

Each instinct maps to an artifact kind (skill, command or agent) through
its category. An instinct that clears the kind's confidence and
observation-count gate is rendered with a fixed template into
evolved/<kind>s/<artifact id>.md.

Artifacts are never deleted. When the source instinct is gone or falls
below its gate, the artifact's entry in evolved/index.json is flagged
stale and the document is left as it is.
"""

import json
import logging
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from continuous_learning.config import (
    EVOLVED_LOCK,
    LearningConfig,
    get_evolved_dir,
    get_evolved_output_dir,
)
from continuous_learning.errors import EvolutionSynthesisError, InstinctNotFound
from continuous_learning.instinct_store import InstinctStore
from continuous_learning.models import ArtifactKind, EvolvedArtifact, Instinct
from continuous_learning.recovery import recover_interrupted_restore
from continuous_learning.utils import (
    atomic_write_text,
    file_lock,
    format_timestamp,
    sanitize_id,
    utc_now,
)

logger = logging.getLogger(__name__)

INDEX_FILE_NAME: str = "index.json"
LOG_FILE_NAME: str = "evolution-log.jsonl"


@dataclass(frozen=True)
class EvolutionCandidate:
    """Where one instinct stands against its evolution gate."""

    instinct_id: str
    category: str
    kind: ArtifactKind
    confidence: float
    observation_count: int
    eligible: bool
    min_confidence: float
    min_observations: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "instinct_id": self.instinct_id,
            "category": self.category,
            "kind": self.kind.value,
            "confidence": self.confidence,
            "observation_count": self.observation_count,
            "eligible": self.eligible,
            "min_confidence": self.min_confidence,
            "min_observations": self.min_observations,
        }


@dataclass
class EvolutionResult:
    """Summary of one evolve run.

    Attributes:
        evolved: Artifact ids synthesized or refreshed (or that would be, on a dry run).
        skipped: Instinct ids that didn't clear their gate or failed to render.
        stale: Artifact ids whose source instinct no longer clears its gate.
        failed_count: How many of the skipped instincts failed to render.
        dry_run: True if nothing was written.
    """

    evolved: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    stale: list[str] = field(default_factory=list)
    failed_count: int = 0
    dry_run: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "evolved": list(self.evolved),
            "skipped": list(self.skipped),
            "stale": list(self.stale),
            "failed_count": self.failed_count,
            "dry_run": self.dry_run,
        }


def artifact_id_for(instinct_id: str, kind: ArtifactKind) -> str:
    return f"{kind.value}-{sanitize_id(instinct_id)}"


def _yaml_string(value: str) -> str:
    # A JSON string literal is a valid double-quoted YAML scalar
    return json.dumps(value, ensure_ascii=False)


def _title(instinct: Instinct) -> str:
    return instinct.description[:1].upper() + instinct.description[1:]


def _provenance_section(instinct: Instinct) -> str:
    evidence = instinct.evidence
    return f"""## Provenance

- Source instinct: `{instinct.id}`
- Pattern: `{instinct.pattern}`
- Category: {instinct.category}
- Confidence: {instinct.confidence:.4f}
- Observations: {evidence.observation_count}
- Success rate: {evidence.success_rate:.0%}
- Contexts: {evidence.context_count}
- First observed: {format_timestamp(evidence.first_observed)}
- Last observed: {format_timestamp(evidence.last_observed)}
"""


def generate_skill(instinct: Instinct) -> str:
    """Render skill content for an instinct.

    Format follows ~/.claude/skills/*/SKILL.md:
    - YAML frontmatter with name and description
    - "## When to Apply" and "## Guidance" sections
    - "## Provenance" section tying the skill back to its evidence
    """
    evidence = instinct.evidence
    description = f"{_title(instinct)}. Use when working on {instinct.category} tasks."

    return f"""---
name: {artifact_id_for(instinct.id, ArtifactKind.SKILL)}
description: {_yaml_string(description)}
source_instinct: {_yaml_string(instinct.id)}
confidence: {instinct.confidence:.4f}
---

# {_title(instinct)}

## When to Apply

When a task matches the learned pattern `{instinct.pattern}`.

## Guidance

- {_title(instinct)}
- Seen {evidence.observation_count} times across {evidence.context_count} contexts with a {evidence.success_rate:.0%} success rate

{_provenance_section(instinct)}"""


def generate_command(instinct: Instinct) -> str:
    """Render command content for an instinct.

    Format follows ~/.claude/commands/:
    - YAML frontmatter with description
    - "I'll apply the learned X pattern" opening
    - Prerequisites section
    """
    name = artifact_id_for(instinct.id, ArtifactKind.COMMAND)

    return f"""---
description: {_yaml_string(f"{_title(instinct)} using a learned pattern.")}
source_instinct: {_yaml_string(instinct.id)}
confidence: {instinct.confidence:.4f}
---

I'll apply the learned {name} pattern to handle this process.

This command will:
- {_title(instinct)}

## Prerequisites
- The task matches the learned pattern `{instinct.pattern}`

{_provenance_section(instinct)}"""


def generate_agent(instinct: Instinct) -> str:
    """Render agent content for an instinct.

    Format follows ~/.claude/agents/:
    - YAML frontmatter with name, description, tools
    - "## Process Flow" with numbered steps
    - Clear activation conditions
    """
    name = artifact_id_for(instinct.id, ArtifactKind.AGENT)

    return f"""---
name: {name}
description: {_yaml_string(_title(instinct))}
tools: Bash, Read, Grep, Glob
source_instinct: {_yaml_string(instinct.id)}
confidence: {instinct.confidence:.4f}
---

You are a specialist for the learned {instinct.category} pattern `{instinct.pattern}`.

## Process Flow

1. Confirm the task matches `{instinct.pattern}`
2. {_title(instinct)}
3. Verify the result before reporting back

## Activation

This agent activates when: {instinct.description}

## When to Ask User

Only ask for help if:
- The task only partially matches the learned pattern
- The result differs from what the pattern predicts

{_provenance_section(instinct)}"""


GENERATORS = {
    ArtifactKind.SKILL: generate_skill,
    ArtifactKind.COMMAND: generate_command,
    ArtifactKind.AGENT: generate_agent,
}


def render_artifact(instinct: Instinct, kind: ArtifactKind) -> str:
    """Render the document for instinct as kind.

    Raises:
        EvolutionSynthesisError: If the template can't be rendered.
    """
    try:
        return GENERATORS[kind](instinct)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise EvolutionSynthesisError(
            f"Failed to render {kind.value} for {instinct.id}: {e}"
        ) from e


class EvolutionEngine:
    """Gates instincts and writes their artifacts.

    Args:
        config: Pipeline configuration (thresholds and category mapping).
        instincts: Instinct store to read; built from config if omitted.
    """

    def __init__(self, config: LearningConfig, instincts: InstinctStore | None = None) -> None:
        self.config = config
        self.root = config.storage_root
        recover_interrupted_restore(config)
        self.instincts = instincts or InstinctStore(config)
        self.evolved_dir = get_evolved_dir(self.root)
        self.index_file = self.evolved_dir / INDEX_FILE_NAME
        self.log_file = self.evolved_dir / LOG_FILE_NAME
        self.lock_file = self.root / EVOLVED_LOCK

    def _read_index(self) -> dict[str, EvolvedArtifact]:
        if not self.index_file.exists():
            return {}
        try:
            data = json.loads(self.index_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Failed to read artifact index %s: %s", self.index_file, e)
            return {}

        index: dict[str, EvolvedArtifact] = {}
        for entry in data.get("artifacts", []) if isinstance(data, dict) else []:
            try:
                artifact = EvolvedArtifact.from_index_dict(entry)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping invalid artifact index entry %r: %s", entry, e)
                continue
            index[artifact.id] = artifact
        return index

    def load_index(self) -> dict[str, EvolvedArtifact]:
        """Artifact metadata keyed by artifact id."""
        with file_lock(self.lock_file, exclusive=False, timeout=self.config.lock_timeout):
            return self._read_index()

    def _write_index(self, index: dict[str, EvolvedArtifact]) -> None:
        payload = {"artifacts": [index[key].to_index_dict() for key in sorted(index)]}
        atomic_write_text(self.index_file, json.dumps(payload, indent=2, sort_keys=True) + "\n")

    def _append_log(self, entries: list[dict[str, Any]]) -> None:
        if not entries:
            return
        self.log_file.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        with self.log_file.open("a", encoding="utf-8") as f:
            for entry in entries:
                f.write(json.dumps(entry, sort_keys=True) + "\n")

    def _artifact_path(self, artifact_id: str, kind: ArtifactKind) -> Path:
        directory = get_evolved_output_dir(kind, self.root)
        file_path = directory / f"{sanitize_id(artifact_id)}.md"
        # Refuse to overwrite symlinks
        if file_path.is_symlink():
            raise EvolutionSynthesisError(f"Refusing to write to symlink: {file_path}")
        return file_path

    def _matches(self, category_filter: str | None, category: str | None, kind: ArtifactKind) -> bool:
        if category_filter is None:
            return True
        return category_filter in (category, kind.value)

    def candidates(self) -> list[EvolutionCandidate]:
        """Every instinct with its target kind and whether it clears the gate."""
        result = []
        for instinct in sorted(self.instincts.list(), key=lambda i: i.id):
            kind = self.config.artifact_kind_for(instinct.category)
            threshold = self.config.threshold_for(kind)
            result.append(
                EvolutionCandidate(
                    instinct_id=instinct.id,
                    category=instinct.category,
                    kind=kind,
                    confidence=instinct.confidence,
                    observation_count=instinct.evidence.observation_count,
                    eligible=threshold.admits(
                        instinct.confidence, instinct.evidence.observation_count
                    ),
                    min_confidence=threshold.min_confidence,
                    min_observations=threshold.min_observations,
                )
            )
        return result

    def evolve(
        self,
        dry_run: bool = False,
        category_filter: str | None = None,
        cancel: threading.Event | None = None,
    ) -> EvolutionResult:
        """Synthesize or refresh artifacts for every instinct that clears its gate.

        Args:
            dry_run: Compute the result without writing anything.
            category_filter: Only consider instincts whose category or
                artifact kind equals this value.
            cancel: Checked between instincts; artifacts rendered before it
                was set are still written.

        Returns:
            EvolutionResult listing evolved artifact ids, skipped instinct
            ids and stale artifact ids.
        """
        result = EvolutionResult(dry_run=dry_run)
        instincts = {instinct.id: instinct for instinct in self.instincts.list()}
        rendered: list[tuple[Instinct, ArtifactKind, str]] = []

        for instinct_id in sorted(instincts):
            if cancel is not None and cancel.is_set():
                logger.warning("Evolution cancelled after %d instincts", len(rendered))
                break
            instinct = instincts[instinct_id]
            kind = self.config.artifact_kind_for(instinct.category)
            if not self._matches(category_filter, instinct.category, kind):
                continue
            threshold = self.config.threshold_for(kind)
            if not threshold.admits(instinct.confidence, instinct.evidence.observation_count):
                result.skipped.append(instinct_id)
                continue
            try:
                content = render_artifact(instinct, kind)
            except EvolutionSynthesisError as e:
                logger.warning("Skipping instinct %s: %s", instinct_id, e)
                result.skipped.append(instinct_id)
                result.failed_count += 1
                continue
            rendered.append((instinct, kind, content))
            result.evolved.append(artifact_id_for(instinct_id, kind))

        if dry_run:
            index = self.load_index()
            result.stale = self._stale_ids(index, instincts, category_filter)
            return result

        recover_interrupted_restore(self.config)
        with file_lock(self.lock_file, exclusive=True, timeout=self.config.lock_timeout):
            index = self._read_index()
            written = self._write_artifacts(index, rendered, result)
            result.stale = self._stale_ids(index, instincts, category_filter)
            for artifact_id in result.stale:
                if not index[artifact_id].stale:
                    logger.info("Flagging artifact %s as stale", artifact_id)
                    index[artifact_id] = replace(index[artifact_id], stale=True)
                    written.append({"action": "stale", "artifact_id": artifact_id})
            self._write_index(index)
            stamp = format_timestamp(utc_now())
            self._append_log([{**entry, "timestamp": stamp} for entry in written])

        logger.info(
            "Evolution: %d evolved, %d skipped, %d stale",
            len(result.evolved),
            len(result.skipped),
            len(result.stale),
        )
        return result

    def _write_artifacts(
        self,
        index: dict[str, EvolvedArtifact],
        rendered: list[tuple[Instinct, ArtifactKind, str]],
        result: EvolutionResult,
    ) -> list[dict[str, Any]]:
        """Write rendered artifacts and update their index entries. Caller holds the lock."""
        log_entries: list[dict[str, Any]] = []
        now = utc_now()
        for instinct, kind, content in rendered:
            artifact_id = artifact_id_for(instinct.id, kind)
            try:
                file_path = self._artifact_path(artifact_id, kind)
            except EvolutionSynthesisError as e:
                logger.warning("Skipping instinct %s: %s", instinct.id, e)
                result.evolved.remove(artifact_id)
                result.skipped.append(instinct.id)
                result.failed_count += 1
                continue

            previous = index.get(artifact_id)
            unchanged = (
                previous is not None
                and not previous.stale
                and previous.confidence == instinct.confidence
                and file_path.exists()
                and file_path.read_text(encoding="utf-8") == content
            )
            if unchanged:
                continue

            atomic_write_text(file_path, content)
            index[artifact_id] = EvolvedArtifact(
                id=artifact_id,
                source_instinct_id=instinct.id,
                category=kind,
                confidence=instinct.confidence,
                created_at=previous.created_at if previous else now,
                updated_at=now if previous else None,
                stale=False,
                path=str(file_path.relative_to(self.root)),
            )
            log_entries.append(
                {
                    "action": "updated" if previous else "created",
                    "artifact_id": artifact_id,
                    "source_instinct_id": instinct.id,
                    "kind": kind.value,
                    "confidence": instinct.confidence,
                }
            )
            logger.debug("Wrote artifact %s", file_path)
        return log_entries

    def _stale_ids(
        self,
        index: dict[str, EvolvedArtifact],
        instincts: dict[str, Instinct],
        category_filter: str | None,
    ) -> list[str]:
        stale = []
        for artifact_id in sorted(index):
            artifact = index[artifact_id]
            instinct = instincts.get(artifact.source_instinct_id)
            category = instinct.category if instinct else None
            if not self._matches(category_filter, category, artifact.category):
                continue
            if instinct is not None and self.config.threshold_for(artifact.category).admits(
                instinct.confidence, instinct.evidence.observation_count
            ):
                continue
            stale.append(artifact_id)
        return stale

    def evolve_instinct(self, instinct_id: str, kind: ArtifactKind | None = None) -> EvolvedArtifact:
        """Write the artifact for one instinct, bypassing its gate.

        Args:
            instinct_id: Instinct to evolve.
            kind: Artifact kind; defaults to the kind its category maps to.

        Returns:
            The written artifact, content included.

        Raises:
            InstinctNotFound: If no instinct has this id.
            EvolutionSynthesisError: If the template can't be rendered.
        """
        instinct = self.instincts.get(instinct_id)
        if instinct is None:
            raise InstinctNotFound(f"Instinct not found: {instinct_id}")
        kind = kind or self.config.artifact_kind_for(instinct.category)
        content = render_artifact(instinct, kind)
        result = EvolutionResult(evolved=[artifact_id_for(instinct_id, kind)])

        recover_interrupted_restore(self.config)
        with file_lock(self.lock_file, exclusive=True, timeout=self.config.lock_timeout):
            index = self._read_index()
            written = self._write_artifacts(index, [(instinct, kind, content)], result)
            if result.failed_count:
                raise EvolutionSynthesisError(f"Failed to write artifact for {instinct_id}")
            self._write_index(index)
            stamp = format_timestamp(utc_now())
            self._append_log([{**entry, "timestamp": stamp, "forced": True} for entry in written])

        artifact = index[artifact_id_for(instinct_id, kind)]
        return replace(artifact, content=content)
