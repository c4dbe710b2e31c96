"""Tests for continuous_learning.instinct_store module.

Tests cover:
- Loading personal and inherited instincts
- Skipping unreadable files and symlinks
- Batch commit: created / updated / unchanged, created_at preserved
- Atomic batch swap and recovery of an interrupted swap
"""

import json
import logging
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _config(tmp_path: Path):
    from continuous_learning.config import load_config

    return load_config(tmp_path)


def _instinct(instinct_id: str = "tool_use-bash-00000000", confidence: float = 0.5, count: int = 10):
    from continuous_learning.models import Instinct, InstinctEvidence

    return Instinct(
        id=instinct_id,
        pattern="tool_use:bash",
        description="Uses the bash tool",
        category="workflow",
        confidence=confidence,
        evidence=InstinctEvidence(
            observation_count=count,
            success_rate=1.0,
            last_observed=NOW,
            first_observed=NOW,
        ),
        created_at=NOW,
        updated_at=NOW,
    )


class TestSerializeInstinct:
    """Tests for serialize_instinct function."""

    def test_sorted_keys_and_indent(self):
        """Serialization should be canonical JSON with sorted keys."""
        from continuous_learning.instinct_store import serialize_instinct

        content = serialize_instinct(_instinct())
        assert content.endswith("\n")
        assert content == json.dumps(json.loads(content), indent=2, sort_keys=True) + "\n"


class TestCommit:
    """Tests for InstinctStore.commit."""

    def test_creates_files(self, tmp_path: Path):
        """New instincts should be written to personal/ and reported as created."""
        from continuous_learning.instinct_store import InstinctStore

        store = InstinctStore(_config(tmp_path))
        result = store.commit([_instinct()])

        assert result.created == ["tool_use-bash-00000000"]
        assert (tmp_path / "instincts" / "personal" / "tool_use-bash-00000000.json").exists()

    def test_identical_instinct_is_unchanged(self, tmp_path: Path):
        """Re-committing the same instinct should leave the file untouched."""
        from continuous_learning.instinct_store import InstinctStore

        store = InstinctStore(_config(tmp_path))
        store.commit([_instinct()])
        path = tmp_path / "instincts" / "personal" / "tool_use-bash-00000000.json"
        before = path.stat().st_ino

        result = store.commit([_instinct()])

        assert result.unchanged == ["tool_use-bash-00000000"]
        assert result.created == result.updated == []
        assert path.stat().st_ino == before

    def test_changed_instinct_is_updated_keeping_created_at(self, tmp_path: Path):
        """A changed instinct should replace the file but keep created_at."""
        from continuous_learning.instinct_store import InstinctStore

        store = InstinctStore(_config(tmp_path))
        store.commit([_instinct()])
        later = replace(_instinct(confidence=0.7), created_at=datetime(2027, 1, 1, tzinfo=timezone.utc))

        result = store.commit([later])

        assert result.updated == ["tool_use-bash-00000000"]
        stored = store.get("tool_use-bash-00000000")
        assert stored.confidence == 0.7
        assert stored.created_at == NOW

    def test_instincts_outside_batch_are_kept(self, tmp_path: Path):
        """A commit should not drop instincts it doesn't mention."""
        from continuous_learning.instinct_store import InstinctStore

        store = InstinctStore(_config(tmp_path))
        store.commit([_instinct("a-00000000")])
        store.commit([_instinct("b-00000000")])

        assert sorted(store.load_personal()) == ["a-00000000", "b-00000000"]

    def test_empty_batch_is_noop(self, tmp_path: Path):
        """An empty batch should change nothing."""
        from continuous_learning.instinct_store import InstinctStore

        result = InstinctStore(_config(tmp_path)).commit([])
        assert result.to_dict() == {"created": [], "updated": [], "unchanged": []}

    def test_failed_commit_leaves_store_unchanged(self, tmp_path: Path):
        """A failure while staging should leave the previous batch visible."""
        from continuous_learning.instinct_store import InstinctStore

        store = InstinctStore(_config(tmp_path))
        store.commit([_instinct("a-00000000")])

        with patch("continuous_learning.instinct_store.swap_directory", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                store.commit([_instinct("b-00000000"), _instinct("a-00000000", confidence=0.9)])

        personal = store.load_personal()
        assert sorted(personal) == ["a-00000000"]
        assert personal["a-00000000"].confidence == 0.5
        assert not [p for p in (tmp_path / "instincts").iterdir() if p.name.startswith(".staging-")]

    def test_commit_times_out_when_locked(self, tmp_path: Path):
        """A held store lock should make commit raise StoreLocked."""
        from continuous_learning.config import INSTINCTS_LOCK
        from continuous_learning.errors import StoreLocked
        from continuous_learning.instinct_store import InstinctStore
        from continuous_learning.utils import file_lock

        store = InstinctStore(replace(_config(tmp_path), lock_timeout=0.1))
        with file_lock(tmp_path / INSTINCTS_LOCK, exclusive=True, timeout=1.0):
            with pytest.raises(StoreLocked):
                store.commit([_instinct()])


class TestLoad:
    """Tests for loading and listing instincts."""

    def test_list_merges_sources_by_confidence(self, tmp_path: Path):
        """list should include inherited instincts, highest confidence first."""
        from continuous_learning.instinct_store import InstinctStore, serialize_instinct

        store = InstinctStore(_config(tmp_path))
        store.commit([_instinct("mine-00000000", confidence=0.6)])
        (tmp_path / "instincts" / "inherited" / "theirs-00000000.json").write_text(
            serialize_instinct(_instinct("theirs-00000000", confidence=0.8))
        )

        listed = store.list()
        assert [i.id for i in listed] == ["theirs-00000000", "mine-00000000"]
        assert listed[0].source == "inherited"
        assert [i.id for i in store.list(include_inherited=False)] == ["mine-00000000"]

    def test_personal_shadows_inherited(self, tmp_path: Path):
        """get should prefer a personal instinct over an inherited one."""
        from continuous_learning.instinct_store import InstinctStore, serialize_instinct

        store = InstinctStore(_config(tmp_path))
        store.commit([_instinct("x-00000000", confidence=0.6)])
        (tmp_path / "instincts" / "inherited" / "x-00000000.json").write_text(
            serialize_instinct(_instinct("x-00000000", confidence=0.8))
        )

        assert store.get("x-00000000").source == "personal"
        assert len(store.list()) == 1

    def test_get_missing_returns_none(self, tmp_path: Path):
        """An unknown id should return None."""
        from continuous_learning.instinct_store import InstinctStore

        assert InstinctStore(_config(tmp_path)).get("nope") is None

    def test_unreadable_file_is_skipped_with_warning(self, tmp_path: Path, caplog):
        """A malformed instinct file should be logged and skipped."""
        from continuous_learning.instinct_store import InstinctStore

        store = InstinctStore(_config(tmp_path))
        store.commit([_instinct("good-00000000")])
        (tmp_path / "instincts" / "personal" / "bad.json").write_text("{")
        (tmp_path / "instincts" / "personal" / "partial.json").write_text('{"id": "x"}')

        with caplog.at_level(logging.WARNING, logger="continuous_learning.instinct_store"):
            loaded = store.load_personal()

        assert list(loaded) == ["good-00000000"]
        assert "bad.json" in caplog.text
        assert "partial.json" in caplog.text

    def test_symlink_is_skipped(self, tmp_path: Path, caplog):
        """Symlinked instinct files should be skipped."""
        from continuous_learning.instinct_store import InstinctStore, serialize_instinct

        store = InstinctStore(_config(tmp_path))
        outside = tmp_path / "outside.json"
        outside.write_text(serialize_instinct(_instinct("evil-00000000")))
        (tmp_path / "instincts" / "inherited" / "evil-00000000.json").symlink_to(outside)

        with caplog.at_level(logging.WARNING, logger="continuous_learning.instinct_store"):
            assert store.load_inherited() == {}
        assert "Skipping symlink" in caplog.text


class TestRecovery:
    """Tests for recovering an interrupted batch swap."""

    def test_open_restores_parked_tree(self, tmp_path: Path):
        """Opening the store should roll back a swap interrupted between renames."""
        from continuous_learning.instinct_store import InstinctStore, serialize_instinct

        config = _config(tmp_path)
        personal = tmp_path / "instincts" / "personal"
        previous = tmp_path / "instincts" / "personal.previous"
        personal.rename(previous)
        (previous / "kept-00000000.json").write_text(serialize_instinct(_instinct("kept-00000000")))

        store = InstinctStore(config)

        assert list(store.load_personal()) == ["kept-00000000"]
        assert not previous.exists()
