from __future__ import annotations

import logging
import textwrap
from pathlib import Path

import pytest

from ctxsync.config import TRACE, ConfigError, Settings, load_settings, write_default_config


def test_missing_config_yields_defaults(tmp_path: Path) -> None:
    settings = load_settings(tmp_path / "ctxsync.yaml")

    assert settings.server.url() == "ws://localhost:8000/data"
    assert settings.client.root == tmp_path.resolve()
    assert settings.client.ignore_path() == tmp_path.resolve() / ".ctxignore"
    assert settings.model.name == "gpt-5-mini"
    assert settings.debug_snapshot_path is None


def test_written_template_loads_back_to_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "conf" / "ctxsync.yaml"
    write_default_config(config_path)

    settings = load_settings(config_path)

    assert settings.server.port == 8000
    assert settings.client.root == config_path.parent.resolve()
    assert settings.model.max_attempts == 3
    assert settings.log_level == "info"


def test_overrides_are_merged_over_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "ctxsync.yaml"
    config_path.write_text(
        textwrap.dedent(
            """
            server:
              port: 9001
            client:
              client_id: workstation
              root: project
            model:
              offline: true
              max_attempts: 0
            debug:
              snapshot_path: debug/context.json
            """
        ).lstrip(),
        encoding="utf-8",
    )

    settings = load_settings(config_path)

    assert settings.server.url() == "ws://localhost:9001/data"
    assert settings.client.client_id == "workstation"
    assert settings.client.root == (tmp_path / "project").resolve()
    assert settings.model.offline is True
    assert settings.model.max_attempts == 3
    assert settings.debug_snapshot_path == tmp_path.resolve() / "debug" / "context.json"


@pytest.mark.parametrize("content", ["server: [unclosed\n", "- just\n- a list\n"])
def test_invalid_config_raises_config_error(tmp_path: Path, content: str) -> None:
    config_path = tmp_path / "ctxsync.yaml"
    config_path.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigError):
        load_settings(config_path)


def test_ctx_log_environment_overrides_configured_level(monkeypatch: pytest.MonkeyPatch) -> None:
    settings = Settings(log_level="error")

    monkeypatch.delenv("CTX_LOG", raising=False)
    assert settings.resolved_log_level() == logging.ERROR

    monkeypatch.setenv("CTX_LOG", "trace")
    assert settings.resolved_log_level() == TRACE

    monkeypatch.setenv("CTX_LOG", "bogus")
    assert settings.resolved_log_level() == logging.ERROR


def test_build_logger_attaches_a_single_handler(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CTX_LOG", "debug")
    settings = Settings()

    logger = settings.build_logger("ctxsync.test-config")
    again = settings.build_logger("ctxsync.test-config")

    assert logger is again
    assert logger.level == logging.DEBUG
    assert len([h for h in logger.handlers if getattr(h, "_ctxsync", False)]) == 1


def test_trace_records_carry_a_level_name(monkeypatch: pytest.MonkeyPatch, caplog) -> None:
    monkeypatch.setenv("CTX_LOG", "trace")
    logger = Settings().build_logger("ctxsync.test-trace")

    with caplog.at_level(TRACE, logger="ctxsync.test-trace"):
        logger.log(TRACE, "parsed main.go")

    assert logging.getLevelName(TRACE) == "TRACE"
    assert [record.levelname for record in caplog.records] == ["TRACE"]
