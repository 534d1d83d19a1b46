import json
import re

import pytest
import yaml
from click.testing import CliRunner

from replicore import __version__
from replicore.cli import main


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def home(tmp_path, monkeypatch):
    """REPLICORE_HOME with a file-backed config and clusters center, A, B."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("REPLICORE_HOME", str(home))
    monkeypatch.delenv("REPLICORE_STORE_PATH", raising=False)
    monkeypatch.delenv("REPLICORE_LOG_LEVEL", raising=False)
    (home / "config.yaml").write_text(yaml.safe_dump({
        "local_cluster": "center",
        "clusters": [
            {"name": "center", "url": "http://center", "type": "CENTER"},
            {"name": "A", "url": "http://a", "type": "EDGE"},
            {"name": "B", "url": "http://b", "type": "EDGE"},
        ],
        "store_backend": "file",
        "store_path": str(tmp_path / "store"),
        "log_file": str(tmp_path / "logs" / "replicore-{date}.log"),
        "console": False,
    }))
    return home


@pytest.fixture
def task_file(tmp_path):
    path = tmp_path / "task.yaml"
    path.write_text(yaml.safe_dump({
        "key": "nightly-key",
        "name": "nightly",
        "local_project_id": "proj",
        "local_repo_name": "docker-local",
        "remote_cluster_ids": ["A", "B"],
        "replica_type": "RUN_ONCE",
        "repo_type": "DOCKER",
    }))
    return path


def test_version(runner):
    result = runner.invoke(main, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


class TestInit:

    def test_creates_config(self, runner, tmp_path, monkeypatch):
        home = tmp_path / "custom_home"
        monkeypatch.setenv("REPLICORE_HOME", str(home))

        result = runner.invoke(main, ["init"])
        assert result.exit_code == 0
        assert "Initialized replicore config" in result.output

        cfg = yaml.safe_load((home / "config.yaml").read_text())
        assert cfg["local_cluster"] == "center"

    def test_does_not_overwrite_without_force(self, runner, home):
        before = (home / "config.yaml").read_text()
        result = runner.invoke(main, ["init"])
        assert result.exit_code == 1
        assert "Config already exists" in result.output
        assert (home / "config.yaml").read_text() == before

    def test_force_overwrites(self, runner, home):
        result = runner.invoke(main, ["init", "--force"])
        assert result.exit_code == 0
        cfg = yaml.safe_load((home / "config.yaml").read_text())
        assert cfg["clusters"] == [{"name": "center", "url": "http://localhost:25901", "type": "CENTER"}]


def test_missing_config(runner, tmp_path, monkeypatch):
    monkeypatch.setenv("REPLICORE_HOME", str(tmp_path / "empty"))
    result = runner.invoke(main, ["task", "list"])
    assert result.exit_code == 1
    assert "Config not loaded" in result.output
    assert "replicore init" in result.output


class TestTaskCommands:

    def test_create_and_show(self, runner, home, task_file):
        result = runner.invoke(main, ["task", "create", str(task_file)])
        assert result.exit_code == 0, result.output
        assert "created task nightly-key" in result.output

        result = runner.invoke(main, ["task", "show", "nightly-key"])
        assert result.exit_code == 0
        shown = json.loads(result.output)
        assert shown["name"] == "nightly"
        assert shown["status"] == "WAITING"
        assert shown["remote_cluster_set"] == ["A", "B"]

    def test_list(self, runner, home, task_file):
        runner.invoke(main, ["task", "create", str(task_file)])
        result = runner.invoke(main, ["task", "list"])
        assert result.exit_code == 0
        assert "1 total" in result.output

    def test_create_duplicate(self, runner, home, task_file):
        runner.invoke(main, ["task", "create", str(task_file)])
        result = runner.invoke(main, ["task", "create", str(task_file)])
        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_create_invalid_cron(self, runner, home, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump({
            "name": "bad",
            "local_project_id": "p",
            "local_repo_name": "r",
            "remote_cluster_ids": ["A"],
            "setting": {"execution_plan": {"cron_expression": "whenever"}},
        }))
        result = runner.invoke(main, ["task", "create", str(path)])
        assert result.exit_code == 1
        assert "invalid cron expression" in result.output

    def test_show_unknown(self, runner, home):
        result = runner.invoke(main, ["task", "show", "nope"])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_disable_blocks_run(self, runner, home, task_file):
        runner.invoke(main, ["task", "create", str(task_file)])
        result = runner.invoke(main, ["task", "disable", "nightly-key"])
        assert result.exit_code == 0
        assert "disabled" in result.output

        result = runner.invoke(main, ["run", "nightly-key"])
        assert result.exit_code == 1
        assert "is disabled" in result.output

        runner.invoke(main, ["task", "enable", "nightly-key"])
        assert runner.invoke(main, ["run", "nightly-key"]).exit_code == 0

    @pytest.mark.parametrize("args", [
        ["task", "list", "--page", "0"],
        ["task", "list", "--size", "5000"],
        ["records", "nightly-key", "--size", "0"],
        ["details", "some-record", "--page", "0"],
    ])
    def test_rejects_out_of_range_paging(self, runner, home, args):
        result = runner.invoke(main, args)
        assert result.exit_code == 2
        assert "Invalid value" in result.output
        assert not isinstance(result.exception, ValueError)

    def test_delete(self, runner, home, task_file):
        runner.invoke(main, ["task", "create", str(task_file)])
        runner.invoke(main, ["run", "nightly-key"])
        result = runner.invoke(main, ["task", "delete", "nightly-key", "--yes"])
        assert result.exit_code == 0
        assert runner.invoke(main, ["task", "show", "nightly-key"]).exit_code == 1


class TestRun:

    def test_run_records_and_details(self, runner, home, task_file):
        runner.invoke(main, ["task", "create", str(task_file)])

        result = runner.invoke(main, ["run", "nightly-key"])
        assert result.exit_code == 0, result.output
        match = re.search(r"completed \(record (\w+)\)", result.output)
        assert match
        record_id = match.group(1)

        shown = json.loads(runner.invoke(main, ["task", "show", "nightly-key"]).output)
        assert shown["status"] == "COMPLETED"
        assert shown["last_execution_status"] == "SUCCESS"

        result = runner.invoke(main, ["records", "nightly-key"])
        assert result.exit_code == 0
        assert "1 total" in result.output

        result = runner.invoke(main, ["details", record_id])
        assert result.exit_code == 0
        assert "2 total" in result.output

        result = runner.invoke(main, ["details", record_id, "--cluster", "A"])
        assert "1 total" in result.output

        result = runner.invoke(main, ["details", record_id, "--status", "FAILED"])
        assert "0 total" in result.output

    def test_run_unknown_task(self, runner, home):
        result = runner.invoke(main, ["run", "missing"])
        assert result.exit_code == 1
        assert "not started" in result.output

    def test_run_twice_one_shot(self, runner, home, task_file):
        runner.invoke(main, ["task", "create", str(task_file)])
        runner.invoke(main, ["run", "nightly-key"])
        result = runner.invoke(main, ["run", "nightly-key"])
        assert result.exit_code == 1
        assert "illegal task transition" in result.output

    def test_unknown_transport(self, runner, home, task_file):
        cfg = yaml.safe_load((home / "config.yaml").read_text())
        cfg["transport"] = "carrier-pigeon"
        (home / "config.yaml").write_text(yaml.safe_dump(cfg))
        runner.invoke(main, ["task", "create", str(task_file)])

        result = runner.invoke(main, ["run", "nightly-key"])
        assert result.exit_code == 1
        assert "Unknown transport" in result.output

    def test_run_writes_structured_log(self, runner, home, task_file, tmp_path):
        runner.invoke(main, ["task", "create", str(task_file)])
        runner.invoke(main, ["run", "nightly-key"])

        logs = list((tmp_path / "logs").glob("replicore-*.log"))
        assert len(logs) == 1
        entries = [json.loads(line) for line in logs[0].read_text().splitlines()]
        events = {e.get("event") for e in entries}
        assert {"task.create", "record.start", "record.complete"} <= events


class TestDue:

    def test_lists_and_runs_due_tasks(self, runner, home, task_file):
        runner.invoke(main, ["task", "create", str(task_file)])

        result = runner.invoke(main, ["due"])
        assert result.exit_code == 0
        assert "nightly-key" in result.output

        result = runner.invoke(main, ["due", "--run"])
        assert result.exit_code == 0
        assert "nightly-key completed" in result.output

        result = runner.invoke(main, ["due"])
        assert "No due tasks" in result.output


class TestNextTrigger:

    def test_next_trigger(self, runner):
        result = runner.invoke(main, ["next-trigger", "*/5 * * * *", "--from", "2024-01-01T00:00:00+00:00"])
        assert result.exit_code == 0
        assert result.output.strip() == "2024-01-01T00:05:00+00:00"

    def test_invalid_expression(self, runner):
        result = runner.invoke(main, ["next-trigger", "not cron"])
        assert result.exit_code == 1
        assert "invalid cron expression" in result.output
