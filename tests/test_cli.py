import json

import pytest
from typer.testing import CliRunner

from streamrelay.cli import app
from streamrelay.partitioner import assign
from streamrelay.settings import settings

runner = CliRunner()


@pytest.fixture
def local_settings(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "LOG_BACKEND", "local")
    monkeypatch.setattr(settings, "DATA_DIR", str(tmp_path / "log"))
    monkeypatch.setattr(settings, "NUM_PARTITIONS", 4)
    monkeypatch.setattr(settings, "CHECKPOINT_BACKEND", "sqlite")
    monkeypatch.setattr(settings, "CHECKPOINT_PATH", str(tmp_path / "ckpt.db"))
    monkeypatch.setattr(settings, "DLQ_BACKEND", "file")
    monkeypatch.setattr(settings, "DLQ_PATH", str(tmp_path / "dlq.jsonl"))
    monkeypatch.setattr(settings, "WRITE_LIMIT_PER_SECOND", None)
    return tmp_path


def test_put_then_inspect(local_settings):
    first = runner.invoke(app, ["put", "PartitionKey1", "Hello, Emi"])
    assert first.exit_code == 0, first.output
    second = runner.invoke(app, ["put", "PartitionKey1", "Hello again"])
    assert second.exit_code == 0, second.output

    result = json.loads(second.stdout.strip().splitlines()[-1])
    partition = assign("PartitionKey1", 4)
    assert result == {"partitionId": partition, "sequenceId": 1}

    inspected = runner.invoke(app, ["inspect", str(local_settings / "log"), "--partition", str(partition)])
    assert inspected.exit_code == 0, inspected.output
    assert "sequence ids 0..1" in inspected.stdout
    assert "[0]" in inspected.stdout and "Hello, Emi" in inspected.stdout
    assert "Hello again" in inspected.stdout


def test_inspect_missing_directory(tmp_path):
    result = runner.invoke(app, ["inspect", str(tmp_path / "nope")])
    assert result.exit_code == 1


def test_put_rejects_oversized_key(local_settings):
    result = runner.invoke(app, ["put", "k" * 300, "data"])
    assert result.exit_code == 1


def test_checkpoint_reset_and_get(local_settings):
    reset = runner.invoke(app, ["checkpoint", "reset", "--partition", "2", "--group", "groupX", "--sequence", "41"])
    assert reset.exit_code == 0, reset.output
    assert "Sequence: 41" in reset.stdout

    got = runner.invoke(app, ["checkpoint", "get", "--group", "groupX"])
    assert got.exit_code == 0, got.output
    assert "Group: groupX, Partition: 2, Sequence: 41" in got.stdout

    runner.invoke(app, ["checkpoint", "reset", "--partition", "2", "--group", "groupX"])
    got = runner.invoke(app, ["checkpoint", "get", "--group", "groupX", "--partition", "2"])
    assert "Sequence: none" in got.stdout


def test_dead_letters_empty(local_settings):
    result = runner.invoke(app, ["dead-letters"])
    assert result.exit_code == 0
    assert result.stdout == ""
