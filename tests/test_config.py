from __future__ import annotations

from pathlib import Path

import pytest

from shipping_evidence import config

_KEYS = (
    "SHIPPING_DB_PATH",
    "GEMINI_API_KEY",
    "VISION_TIMEOUT_SECONDS",
    "VISION_PRIMARY_MODEL",
    "OCR_STRATEGY",
    "TESSERACT_LANG",
    "STORAGE_BASE_URL",
    "STORAGE_TOKEN",
    "STORAGE_PREFIX",
    "SYNC_WORKERS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch) -> None:
    for key in _KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults_without_env(tmp_path: Path) -> None:
    vision = config.load_vision(str(tmp_path))
    assert vision.api_key is None
    assert vision.primary_model == "gemini-1.5-flash"
    assert vision.fallback_model == "gemini-1.5-pro"
    assert vision.timeout_seconds == 10.0
    assert config.load_ocr_strategy(str(tmp_path)) == "remote"
    assert config.load_tesseract_lang(str(tmp_path)) == "jpn+eng"
    assert config.load_db_path(str(tmp_path)) is None
    storage = config.load_storage(str(tmp_path))
    assert not storage.is_configured
    assert storage.prefix == "evidence"
    assert config.load_sync_workers(str(tmp_path)) == 2


def test_dotenv_found_from_subdirectory(tmp_path: Path) -> None:
    (tmp_path / ".env").write_text(
        "GEMINI_API_KEY=abc\nOCR_STRATEGY=LOCAL\nSTORAGE_BASE_URL=https://store.example.test/bucket\n"
        "VISION_TIMEOUT_SECONDS=4.5\nSYNC_WORKERS=3\n",
        encoding="utf-8",
    )
    sub = tmp_path / "src" / "deeper"
    sub.mkdir(parents=True)

    assert config.load_vision(str(sub)).api_key == "abc"
    assert config.load_vision(str(sub)).timeout_seconds == 4.5
    assert config.load_ocr_strategy(str(sub)) == "local"
    assert config.load_storage(str(sub)).base_url == "https://store.example.test/bucket"
    assert config.load_sync_workers(str(sub)) == 3


def test_environment_wins_over_dotenv(tmp_path: Path, monkeypatch) -> None:
    (tmp_path / ".env").write_text("TESSERACT_LANG=eng\n", encoding="utf-8")
    monkeypatch.setenv("TESSERACT_LANG", "jpn")
    assert config.load_tesseract_lang(str(tmp_path)) == "jpn"


def test_bad_values_fall_back(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("VISION_TIMEOUT_SECONDS", "soon")
    monkeypatch.setenv("OCR_STRATEGY", "psychic")
    monkeypatch.setenv("SYNC_WORKERS", "many")
    assert config.load_vision(str(tmp_path)).timeout_seconds == 10.0
    assert config.load_ocr_strategy(str(tmp_path)) == "remote"
    assert config.load_sync_workers(str(tmp_path)) == 2


def test_db_path_is_expanded(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("SHIPPING_DB_PATH", str(tmp_path / "x" / ".." / "db.sqlite3"))
    assert config.load_db_path(str(tmp_path)) == str(tmp_path / "db.sqlite3")
