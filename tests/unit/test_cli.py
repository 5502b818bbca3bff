"""
Unit tests for the storesync CLI.
"""

import json
import sys
import types

import pytest
from loguru import logger
from typer.testing import CliRunner

from storesync.cli import app, iter_keys
from storesync.errors import NotFound
from storesync.outcomes import NoChange, Updated

runner = CliRunner()


@pytest.fixture(autouse=True)
def restore_logging(fresh_settings):
    """The sync command reconfigures loguru; put the default sink back afterwards."""
    yield
    logger.remove()
    logger.add(sys.stderr)


@pytest.fixture
def fake_workers(monkeypatch):
    mod = types.ModuleType("fake_workers")

    def in_sync():
        async def worker(key):
            if key.startswith("same"):
                return NoChange(key=key, value=1)
            return Updated(key=key, old=0, new=1)

        return worker

    def missing():
        async def worker(key):
            raise NotFound(f"{key} not in catalog")

        return worker

    mod.in_sync = in_sync
    mod.missing = missing
    monkeypatch.setitem(sys.modules, "fake_workers", mod)
    return mod


@pytest.fixture
def keys_file(tmp_path):
    path = tmp_path / "keys.txt"
    path.write_text("# skus\nA\nsame-1\n\nB  # trailing comment\n", encoding="utf-8")
    return path


def test_iter_keys_skips_comments_and_blanks(keys_file):
    assert list(iter_keys(str(keys_file))) == ["A", "same-1", "B"]


def test_settings_command_prints_json(monkeypatch):
    monkeypatch.setenv("STORESYNC_MAX_RETRIES", "9")
    result = runner.invoke(app, ["settings"])
    assert result.exit_code == 0
    assert json.loads(result.stdout)["max_retries"] == 9


def test_sync_prints_summary(fake_workers, keys_file):
    result = runner.invoke(
        app,
        ["sync", str(keys_file), "--worker", "fake_workers:in_sync", "--log-level", "CRITICAL"],
    )
    assert result.exit_code == 0, result.output
    summary = json.loads(result.stdout)
    assert summary["total"] == 3
    assert summary["updated"] == 2
    assert summary["no_change"] == 1
    assert summary["errors"] == 0


def test_sync_exits_nonzero_when_keys_fail(fake_workers, keys_file):
    result = runner.invoke(
        app,
        [
            "sync",
            str(keys_file),
            "--worker",
            "fake_workers:missing",
            "--no-retry",
            "--log-level",
            "CRITICAL",
        ],
    )
    assert result.exit_code == 1
    summary = json.loads(result.stdout)
    assert summary["terminal_failed"] == 3


def test_sync_rejects_malformed_worker(keys_file):
    result = runner.invoke(app, ["sync", str(keys_file), "--worker", "no-colon"])
    assert result.exit_code == 2


def test_sync_with_no_keys_is_a_noop(fake_workers, tmp_path):
    empty = tmp_path / "empty.txt"
    empty.write_text("# nothing yet\n", encoding="utf-8")
    result = runner.invoke(
        app, ["sync", str(empty), "--worker", "fake_workers:in_sync", "--log-level", "CRITICAL"]
    )
    assert result.exit_code == 0
