from __future__ import annotations

import logging
from pathlib import Path

from shipping_evidence.logging import _coerce_level, get_logger
from shipping_evidence.paths import find_project_root, var_dir


def test_project_root_is_nearest_marker(tmp_path: Path) -> None:
    (tmp_path / "pyproject.toml").write_text("", encoding="utf-8")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)

    assert find_project_root(str(nested)) == str(tmp_path)
    assert var_dir(str(tmp_path)) == str(tmp_path / "var")


def test_project_root_without_marker_is_start_dir(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr("shipping_evidence.paths._is_root", lambda d: False)
    assert find_project_root(str(tmp_path)) == str(tmp_path)


def test_level_names_and_fallback() -> None:
    assert _coerce_level("debug") == logging.DEBUG
    assert _coerce_level(" WARN ") == logging.WARNING
    assert _coerce_level("nonsense") == logging.INFO
    assert _coerce_level(None) == logging.INFO
    assert _coerce_level(logging.ERROR) == logging.ERROR


def test_logger_is_configured_once(monkeypatch) -> None:
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.delenv("LOG_FILE", raising=False)
    first = get_logger("configured-once-check")
    second = get_logger("configured-once-check")

    assert first is second
    assert first.name == "shipping_evidence.configured-once-check"
    assert len(first.handlers) == 1
    assert first.level == logging.DEBUG
    assert first.propagate is False
