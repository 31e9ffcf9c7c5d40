"""Centralised configuration for reposync.

Load order (later sources override earlier ones):
  1. Built-in defaults
  2. ~/.reposync/config.json
  3. .env file (via python-dotenv)
  4. Real environment variables
"""

import json
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

# Load .env first so real env vars still win over it
load_dotenv()

# ── defaults ──────────────────────────────────────────────────────────
_DEFAULTS = {
    "store_id": "reposync",
    "upload_concurrency": "100",
    "min_chunk_chars": "50",
    "embedding_dims": "128",
    "embedding_model": "",  # Empty means use DEFAULT_EMBEDDING_MODEL
    "metadata_path": "",  # Empty means ~/.reposync/meta.json
    "ignore_patterns": "",  # Comma separated gitignore-style patterns
}

DEFAULT_EMBEDDING_MODEL = "mixedbread-ai/mxbai-embed-xsmall-v1"

# Name of the tool-specific ignore file looked up at each traversal root
IGNORE_FILENAME = ".reposyncignore"


# ── data directory (configurable via REPOSYNC_DATA_DIR) ───────────────
def _get_data_dir() -> Path:
    """Return the data directory, respecting REPOSYNC_DATA_DIR env var."""
    env_dir = os.environ.get("REPOSYNC_DATA_DIR")
    if env_dir:
        return Path(env_dir)
    return Path.home() / ".reposync"


_config_dir = _get_data_dir()
_config_path = _config_dir / "config.json"

_file_cfg: dict = {}
if _config_path.is_file():
    try:
        _file_cfg = json.loads(_config_path.read_text(encoding="utf-8"))
        if not isinstance(_file_cfg, dict):
            _file_cfg = {}
    except (json.JSONDecodeError, OSError):
        _file_cfg = {}


def _get(key: str) -> str:
    """Return a config value using the load-order described above."""
    env_map = {
        "store_id": "REPOSYNC_STORE_ID",
        "upload_concurrency": "REPOSYNC_UPLOAD_CONCURRENCY",
        "min_chunk_chars": "REPOSYNC_MIN_CHUNK_CHARS",
        "embedding_dims": "REPOSYNC_EMBEDDING_DIMS",
        "embedding_model": "REPOSYNC_EMBEDDING_MODEL",
        "metadata_path": "REPOSYNC_METADATA_PATH",
        "ignore_patterns": "REPOSYNC_IGNORE_PATTERNS",
    }

    # 4) env var  (highest priority)
    env_name = env_map.get(key)
    if env_name:
        env_val = os.getenv(env_name)
        if env_val:  # non-empty string
            return env_val

    # 2) ~/.reposync/config.json
    val = _file_cfg.get(key)
    if val is not None and str(val):
        return str(val)

    # 1) built-in default
    return _DEFAULTS[key]


def _get_int(key: str) -> int:
    """Return an integer config value, falling back to the default if invalid."""
    raw = _get(key)
    try:
        value = int(raw)
    except ValueError:
        print(
            f"Warning: invalid integer for '{key}': {raw!r}, using default",
            file=sys.stderr,
        )
        return int(_DEFAULTS[key])
    return value if value > 0 else int(_DEFAULTS[key])


# ── public constants ──────────────────────────────────────────────────
STORE_ID: str = _get("store_id")
UPLOAD_CONCURRENCY: int = _get_int("upload_concurrency")
MIN_CHUNK_CHARS: int = _get_int("min_chunk_chars")
EMBEDDING_DIMS: int = _get_int("embedding_dims")
EMBEDDING_MODEL: str = _get("embedding_model") or DEFAULT_EMBEDDING_MODEL
IGNORE_PATTERNS: list[str] = [
    p.strip() for p in _get("ignore_patterns").split(",") if p.strip()
]


def config_dir() -> Path:
    """Return the data directory path, respecting REPOSYNC_DATA_DIR env var."""
    return _get_data_dir()


def config_path() -> Path:
    """Return the canonical path to ``~/.reposync/config.json``."""
    return config_dir() / "config.json"


def get_metadata_path() -> Path:
    """Return the path to the persisted file-hash document."""
    custom_path = _get("metadata_path")
    if custom_path:
        return Path(custom_path)
    return _get_data_dir() / "meta.json"


def get_grammars_dir() -> Path:
    """Return the directory holding downloaded grammar libraries."""
    return _get_data_dir() / "grammars"


def get_models_dir() -> Path:
    """Return the cache directory for embedding models."""
    return _get_data_dir() / "models"


def load_grammar_urls() -> dict[str, str]:
    """Return the ``grammar_urls`` mapping from config.json.

    Non-string entries are dropped; a missing or malformed mapping yields
    an empty dict.
    """
    urls = _file_cfg.get("grammar_urls", {})
    if not isinstance(urls, dict):
        print(
            f"Warning: 'grammar_urls' in {_config_path} is not a dict, ignoring",
            file=sys.stderr,
        )
        return {}
    return {
        str(lang): url
        for lang, url in urls.items()
        if isinstance(url, str) and url
    }


def save_config(settings: dict) -> Path:
    """Write *settings* to ``~/.reposync/config.json``.

    Creates the ``~/.reposync`` directory if it doesn't exist.
    Returns the path written to.
    """
    d = config_dir()
    d.mkdir(parents=True, exist_ok=True)
    path = config_path()
    path.write_text(json.dumps(settings, indent=2) + "\n", encoding="utf-8")
    return path
