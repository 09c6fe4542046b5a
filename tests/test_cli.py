"""Tests for the command line interface."""

import json

import pytest
from typer.testing import CliRunner

from genproof.cli import app

runner = CliRunner()


@pytest.fixture
def env(tmp_path, monkeypatch):
    monkeypatch.setenv("GENPROOF_KV_URL", "memory://")
    monkeypatch.setenv("GENPROOF_DATABASE_URL", f"sqlite:///{tmp_path / 'genproof.db'}")
    monkeypatch.setenv("GENPROOF_LOG_LEVEL", "WARNING")
    # Keep structlog bound to the real stdout rather than the runner's buffer
    monkeypatch.setattr("genproof.cli.configure_logging", lambda *args, **kwargs: None)
    return tmp_path


def write_events(path, events):
    path.write_text("\n".join(json.dumps(event) for event in events) + "\n")
    return path


class TestSubmitCommand:
    def test_submit_queues_job(self, env):
        result = runner.invoke(app, ["submit", "subject-1", "BRCA1"])

        assert result.exit_code == 0
        assert "queued" in result.output
        assert "Queue position: 1" in result.output

    def test_submit_rejects_unknown_trait(self, env):
        result = runner.invoke(app, ["submit", "subject-1", "APOE"])

        assert result.exit_code == 1
        assert "VALIDATION_FAILED" in result.output

    def test_status_of_unknown_job(self, env):
        result = runner.invoke(app, ["status", "missing-job"])

        assert result.exit_code == 1
        assert "NOT_FOUND" in result.output


class TestReconcileCommand:
    """Tests for replaying an exported event log."""

    def test_applies_events(self, env):
        assert runner.invoke(app, ["init-db"]).exit_code == 0
        events = write_events(
            env / "events.jsonl",
            [
                {
                    "type": "AccessGranted",
                    "blockNumber": 1,
                    "txHash": "0x01",
                    "subjectRef": "subject-1",
                    "counterpartyRef": "clinic-1",
                    "payload": {"scopes": ["BRCA1"]},
                },
                {
                    "type": "ArtifactSubmitted",
                    "blockNumber": 2,
                    "txHash": "0x02",
                    "subjectRef": "subject-1",
                    "traitType": "BRCA1",
                },
            ],
        )

        result = runner.invoke(app, ["reconcile", str(events)])

        assert result.exit_code == 0
        assert "applied" in result.output

        replay = runner.invoke(app, ["reconcile", str(events)])
        assert replay.exit_code == 0

        listed = runner.invoke(app, ["grants", "subject-1"])
        assert listed.exit_code == 0
        assert "clinic-1" in listed.output
        assert "active" in listed.output

    def test_dead_letters_fail_the_command(self, env):
        assert runner.invoke(app, ["init-db"]).exit_code == 0
        events = write_events(
            env / "events.jsonl",
            [
                {
                    "type": "AccessGranted",
                    "blockNumber": 1,
                    "txHash": "0x01",
                    "subjectRef": "subject-1",
                }
            ],
        )

        result = runner.invoke(app, ["reconcile", str(events)])

        assert result.exit_code == 1
        assert "VALIDATION_FAILED" in result.output


class TestMaintenanceCommands:
    def test_purge_on_empty_store(self, env):
        assert runner.invoke(app, ["init-db"]).exit_code == 0

        result = runner.invoke(app, ["purge"])

        assert result.exit_code == 0
        assert "Purged 0 expired artifacts" in result.output

    def test_queue_is_empty_in_a_fresh_process(self, env):
        result = runner.invoke(app, ["queue"])

        assert result.exit_code == 0
        assert "Queued jobs: 0" in result.output


class TestPinDataCommand:
    """Input checks run before anything is pinned."""

    def test_rejects_non_object(self, env):
        data = env / "data.json"
        data.write_text(json.dumps([1, 2, 3]))

        result = runner.invoke(app, ["pin-data", "subject-1", str(data)])

        assert result.exit_code == 1
        assert "JSON object" in result.output

    def test_rejects_unreadable_file(self, env):
        result = runner.invoke(app, ["pin-data", "subject-1", str(env / "missing.json")])

        assert result.exit_code == 1
        assert "Cannot read" in result.output
