import os
from typing import Dict, Optional

from dotenv import dotenv_values

from .logging import get_logger
from .ocr.remote import VisionConfig
from .paths import expand_abs
from .sync.storage import StorageConfig

log = get_logger("config")


OCR_STRATEGIES = ("remote", "local")


def _find_upwards(start_dir: str, filename: str) -> Optional[str]:
    """Return first matching file found when walking up from start_dir.

    Running the CLI from a subdirectory (e.g. `src/`) still finds the
    repository-level `.env`.
    """
    d = os.path.abspath(start_dir or ".")
    while True:
        candidate = os.path.join(d, filename)
        if os.path.isfile(candidate):
            return candidate
        parent = os.path.dirname(d)
        if parent == d:
            return None
        d = parent


def _read_dotenv(dotenv_dir: str) -> Dict[str, str]:
    """Read the nearest .env into a mapping; does not mutate os.environ."""
    path = _find_upwards(dotenv_dir, ".env")
    if not path:
        log.debug(f"No .env found starting from: {os.path.abspath(dotenv_dir)}")
        return {}
    values = {k: v.strip() for k, v in dotenv_values(path).items() if k and v is not None}
    log.debug(f"Loaded {len(values)} key(s) from .env at {path}")
    return values


def _lookup(name: str, env: Dict[str, str]) -> Optional[str]:
    v = os.environ.get(name)
    if v is None:
        v = env.get(name)
    if v is None:
        return None
    v = v.strip()
    return v or None


def load_db_path(dotenv_dir: str) -> Optional[str]:
    """Return SHIPPING_DB_PATH if set; None means the store picks its default."""
    v = _lookup("SHIPPING_DB_PATH", _read_dotenv(dotenv_dir))
    return expand_abs(v) if v else None


def load_vision(dotenv_dir: str) -> VisionConfig:
    """Return the hosted vision model settings.

    A missing GEMINI_API_KEY is not an error here; the client reports it as
    a config-missing result so OCR silently stays off.
    """
    env = _read_dotenv(dotenv_dir)
    defaults = VisionConfig(api_key=None)
    timeout_raw = _lookup("VISION_TIMEOUT_SECONDS", env)
    try:
        timeout = float(timeout_raw) if timeout_raw else defaults.timeout_seconds
    except ValueError:
        log.warning(f"VISION_TIMEOUT_SECONDS={timeout_raw!r} is not a number; using {defaults.timeout_seconds}")
        timeout = defaults.timeout_seconds
    return VisionConfig(
        api_key=_lookup("GEMINI_API_KEY", env),
        base_url=_lookup("VISION_BASE_URL", env) or defaults.base_url,
        primary_model=_lookup("VISION_PRIMARY_MODEL", env) or defaults.primary_model,
        fallback_model=_lookup("VISION_FALLBACK_MODEL", env) or defaults.fallback_model,
        timeout_seconds=timeout,
    )


def load_ocr_strategy(dotenv_dir: str) -> str:
    v = (_lookup("OCR_STRATEGY", _read_dotenv(dotenv_dir)) or "remote").lower()
    if v not in OCR_STRATEGIES:
        log.warning(f"Unknown OCR_STRATEGY={v!r}; defaulting to 'remote'")
        return "remote"
    return v


def load_tesseract_lang(dotenv_dir: str) -> str:
    return _lookup("TESSERACT_LANG", _read_dotenv(dotenv_dir)) or "jpn+eng"


def load_storage(dotenv_dir: str) -> StorageConfig:
    """Return object storage settings; base_url=None disables cloud sync."""
    env = _read_dotenv(dotenv_dir)
    base_url = _lookup("STORAGE_BASE_URL", env)
    if base_url:
        log.info("Cloud storage configured")
    else:
        log.info("STORAGE_BASE_URL not set; cloud sync disabled")
    return StorageConfig(
        base_url=base_url,
        token=_lookup("STORAGE_TOKEN", env),
        public_base_url=_lookup("STORAGE_PUBLIC_BASE_URL", env),
        prefix=_lookup("STORAGE_PREFIX", env) or "evidence",
    )


def load_sync_workers(dotenv_dir: str, fallback: int = 2) -> int:
    v = _lookup("SYNC_WORKERS", _read_dotenv(dotenv_dir))
    if not v:
        return fallback
    try:
        return max(1, int(v))
    except ValueError:
        log.warning(f"SYNC_WORKERS={v!r} is not an integer; using {fallback}")
        return fallback
