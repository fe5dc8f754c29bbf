"""Tests for the nanojournal CLI."""

import sys
from datetime import datetime, timedelta

import pytest
from loguru import logger
from typer.testing import CliRunner

from nanojournal.cli.main import app
from nanojournal.config.schema import MemoryConfig
from nanojournal.memory.models import PatternKind, PatternStatus
from nanojournal.memory.scoring import canonical_hash
from nanojournal.memory.store import PatternStore

runner = CliRunner()


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """Point HOME and the workspace at a temp directory."""
    monkeypatch.setenv("HOME", str(tmp_path))
    path = tmp_path / "ws"
    monkeypatch.setenv("NANOJOURNAL_WORKSPACE", str(path))
    yield path
    # The CLI swaps in its own sinks bound to the runner's streams
    logger.remove()
    logger.add(sys.stderr)


def _seed(workspace, content, kind=PatternKind.PREFERENCE, **kwargs):
    with PatternStore(MemoryConfig(), workspace) as store:
        return store.create_pattern(
            content=content,
            kind=kind,
            confidence=0.9,
            canonical_hash=canonical_hash(content),
            now=datetime.now() - timedelta(days=30),
            **kwargs,
        )


class TestMemoryCommands:
    """Tests for the memory sub-commands."""

    def test_expire_yes_deprecates_stale_event(self, workspace):
        stale = _seed(workspace, "Dentist appointment", kind=PatternKind.EVENT,
                      expires_at=datetime.now() - timedelta(days=1))
        kept = _seed(workspace, "Likes tea")

        result = runner.invoke(app, ["memory", "expire", "--yes"])

        assert result.exit_code == 0
        assert "Deprecated 1 patterns" in result.stdout
        with PatternStore(MemoryConfig(), workspace) as store:
            assert store.get_pattern(stale.id).status == PatternStatus.DEPRECATED
            assert store.get_pattern(kept.id).status == PatternStatus.ACTIVE

    def test_expire_with_nothing_stale(self, workspace):
        _seed(workspace, "Likes tea")

        result = runner.invoke(app, ["memory", "expire", "--yes"])

        assert result.exit_code == 0
        assert "Nothing to expire" in result.stdout

    def test_expire_declined_keeps_pattern(self, workspace):
        stale = _seed(workspace, "Dentist appointment", kind=PatternKind.EVENT,
                      expires_at=datetime.now() - timedelta(days=1))

        result = runner.invoke(app, ["memory", "expire"], input="n\n")

        assert result.exit_code == 0
        assert "Cancelled" in result.stdout
        with PatternStore(MemoryConfig(), workspace) as store:
            assert store.get_pattern(stale.id).status == PatternStatus.ACTIVE

    def test_show_missing_pattern_exits_1(self, workspace):
        result = runner.invoke(app, ["memory", "show", "999"])

        assert result.exit_code == 1
        assert "Pattern 999 not found" in result.stdout

    def test_show_pattern(self, workspace):
        pattern = _seed(workspace, "Likes tea")

        result = runner.invoke(app, ["memory", "show", str(pattern.id)])

        assert result.exit_code == 0
        assert "Likes tea" in result.stdout
        assert "preference" in result.stdout

    def test_status_counts_patterns(self, workspace):
        _seed(workspace, "Likes tea")
        _seed(workspace, "Dentist appointment", kind=PatternKind.EVENT,
              expires_at=datetime.now() - timedelta(days=1))

        result = runner.invoke(app, ["memory", "status"])

        assert result.exit_code == 0
        assert "Patterns: 2" in result.stdout
        assert "1 stale event memories pending review" in result.stdout

    def test_top_lists_patterns(self, workspace):
        _seed(workspace, "Likes tea")

        result = runner.invoke(app, ["memory", "top"])

        assert result.exit_code == 0
        assert "Likes tea" in result.stdout

    def test_top_empty(self, workspace):
        result = runner.invoke(app, ["memory", "top"])

        assert result.exit_code == 0
        assert "No patterns yet" in result.stdout

    def test_disabled_memory(self, workspace, monkeypatch):
        monkeypatch.setenv("NANOJOURNAL_MEMORY__ENABLED", "false")

        result = runner.invoke(app, ["memory", "status"])

        assert result.exit_code == 0
        assert "Memory system is disabled" in result.stdout


class TestVersion:
    def test_version(self, workspace):
        result = runner.invoke(app, ["version"])

        assert result.exit_code == 0
        assert "nanojournal v" in result.stdout
