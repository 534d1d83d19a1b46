import json
import logging
import sys
from pathlib import Path

import pytest
import yaml

from replicore.config import ConfigError, ReplicoreConfig, default_config, get_replicore_home, load_config
from replicore.store import FileDocumentStore, InMemoryDocumentStore
from replicore.utils import StructuredFormatter, TaskKeyFormatter, setup_logging


def _write(tmp_path, data):
    (tmp_path / "config.yaml").write_text(yaml.safe_dump(data))


def test_get_replicore_home_default(monkeypatch):
    monkeypatch.delenv("REPLICORE_HOME", raising=False)
    assert get_replicore_home() == Path("~/.config/replicore").expanduser()


def test_get_replicore_home_env_var(monkeypatch, tmp_path):
    custom_home = tmp_path / "custom_home"
    monkeypatch.setenv("REPLICORE_HOME", str(custom_home))
    assert get_replicore_home() == custom_home


def test_load_config_missing_file(monkeypatch, tmp_path):
    monkeypatch.setenv("REPLICORE_HOME", str(tmp_path))
    with pytest.raises(FileNotFoundError, match="replicore config.yaml not found"):
        load_config()


def test_load_config_valid(monkeypatch, tmp_path):
    monkeypatch.setenv("REPLICORE_HOME", str(tmp_path))
    monkeypatch.delenv("REPLICORE_STORE_PATH", raising=False)
    monkeypatch.delenv("REPLICORE_LOG_LEVEL", raising=False)
    _write(tmp_path, {
        "local_cluster": "center",
        "clusters": [
            {"name": "center", "url": "http://center", "type": "CENTER"},
            {"name": "edge-1", "url": "http://edge-1", "type": "EDGE"},
        ],
        "store_backend": "memory",
        "max_workers": 4,
    })

    cfg = load_config()
    assert isinstance(cfg, ReplicoreConfig)
    assert cfg.local_cluster == "center"
    assert cfg.max_workers == 4
    assert isinstance(cfg.open_store(), InMemoryDocumentStore)
    registry = cfg.cluster_registry()
    assert registry.get_local().url == "http://center"
    assert registry.exists("edge-1")
    assert [c.name for c in registry.list_all()] == ["center", "edge-1"]


def test_load_config_explicit_path(tmp_path):
    path = tmp_path / "elsewhere.yaml"
    path.write_text(yaml.safe_dump({"local_cluster": "c1"}))
    assert load_config(path).local_cluster == "c1"


def test_env_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("REPLICORE_HOME", str(tmp_path))
    monkeypatch.setenv("REPLICORE_STORE_PATH", str(tmp_path / "store"))
    monkeypatch.setenv("REPLICORE_LOG_LEVEL", "DEBUG")
    _write(tmp_path, {"local_cluster": "center"})

    cfg = load_config()
    assert cfg.store_dir() == tmp_path / "store"
    assert cfg.log_level == "DEBUG"
    assert isinstance(cfg.open_store(), FileDocumentStore)


@pytest.mark.parametrize("content,message", [
    ("", "empty"),
    ("local_cluster: [unclosed", "Invalid YAML"),
    ("- a\n- b\n", "mapping"),
    ("local_cluster: c\nbogus: 1\n", "Unknown config key"),
    ("clusters: []\n", "local_cluster is required"),
    ("local_cluster: c\nstore_backend: mongo\n", "store_backend"),
    ("local_cluster: c\nlog_format: xml\n", "log_format"),
    ("local_cluster: c\nmax_workers: 0\n", "max_workers"),
    ("local_cluster: c\nclusters:\n  - {name: a}\n  - {name: a}\n", "unique"),
])
def test_invalid_config(monkeypatch, tmp_path, content, message):
    monkeypatch.setenv("REPLICORE_HOME", str(tmp_path))
    monkeypatch.delenv("REPLICORE_LOG_LEVEL", raising=False)
    (tmp_path / "config.yaml").write_text(content)
    with pytest.raises(ConfigError, match=message):
        load_config()


def test_default_config_roundtrips():
    cfg = default_config()
    assert ReplicoreConfig.from_dict(cfg.to_dict()) == cfg
    cfg.validate()


def test_log_file_path_substitutes_date():
    cfg = ReplicoreConfig(local_cluster="c", log_file="/var/log/replicore-{date}.log")
    assert cfg.log_file_path("2024-01-01") == Path("/var/log/replicore-2024-01-01.log")


class TestLogging:

    def test_structured_file_log(self, tmp_path):
        log_file = tmp_path / "logs" / "replicore.log"
        logger = setup_logging(log_file, log_level="INFO", console_output=False)

        logger.getChild("record_service").info(
            "complete record [r1]", extra={"task_key": "t1", "record_id": "r1"}
        )
        for handler in logger.handlers:
            handler.flush()

        entry = json.loads(log_file.read_text().strip().splitlines()[-1])
        assert entry["message"] == "complete record [r1]"
        assert entry["level"] == "INFO"
        assert entry["logger"] == "replicore.record_service"
        assert entry["task_key"] == "t1"
        assert entry["record_id"] == "r1"

    def test_setup_replaces_handlers(self, tmp_path):
        setup_logging(tmp_path / "a.log", console_output=True)
        logger = setup_logging(None, log_format="pretty", console_output=True)
        assert len(logger.handlers) == 1
        assert logger.propagate is False

    def test_formatter_includes_exception(self):
        formatter = StructuredFormatter()
        try:
            raise ValueError("bad")
        except ValueError:
            record = logging.LogRecord("replicore", logging.ERROR, __file__, 1, "failed", None, sys.exc_info())
        assert "ValueError: bad" in formatter.format(record)

    def test_console_format_prefixes_task_key(self):
        formatter = TaskKeyFormatter()
        record = logging.LogRecord("replicore", logging.WARNING, __file__, 1, "leg failed", None, None)
        assert formatter.format(record) == "WARNING: leg failed"
        record.task_key = "t1"
        assert formatter.format(record) == "WARNING: [t1] leg failed"
