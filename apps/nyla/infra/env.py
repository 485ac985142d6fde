"""
Environment settings for the NYLA retrieval core.

Provider credentials, bundled config locations and the store directory all
come from environment variables, optionally seeded from `.env` files.
"""

import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv


APP_DIR = Path(__file__).resolve().parents[1]
DEFAULT_DATA_DIR = "apps/nyla/data/kb_lance"
DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"


def _env_candidates() -> List[Path]:
    # Earlier files win since nothing is overridden once set.
    return [APP_DIR.parents[1] / ".env", APP_DIR / ".env", APP_DIR / "env.example"]


def load_env(env_file: Optional[str] = None) -> None:
    """
    Seed os.environ from `env_file`, or from the project `.env`, the app
    `.env` and the bundled env.example in that order. Variables that are
    already set are never replaced.
    """
    paths = [Path(env_file)] if env_file else _env_candidates()
    for path in paths:
        if path.exists():
            load_dotenv(path.as_posix(), override=False)


def get_openrouter_api_key() -> Optional[str]:
    """OPENROUTER_API_KEY, falling back to OPENAI_API_KEY."""
    return os.getenv("OPENROUTER_API_KEY") or os.getenv("OPENAI_API_KEY")


def get_openai_base_url() -> str:
    return os.getenv("OPENAI_BASE_URL", DEFAULT_BASE_URL)


def get_openrouter_headers() -> Dict[str, str]:
    """Attribution headers sent with every embedding request."""
    return {
        "HTTP-Referer": os.getenv("OPENROUTER_REFERER", "https://example.org/nyla"),
        "X-Title": os.getenv("OPENROUTER_TITLE", "NYLA-Retrieval"),
    }


def get_config_path() -> Path:
    """Retrieval config; NYLA_CONFIG overrides the bundled file."""
    override = os.getenv("NYLA_CONFIG")
    return Path(override) if override else APP_DIR / "configs" / "retrieval.yaml"


def get_glossary_path() -> Path:
    override = os.getenv("NYLA_GLOSSARY")
    return Path(override) if override else APP_DIR / "configs" / "glossary.yaml"


def get_data_dir() -> str:
    """Directory of the LanceDB knowledge store."""
    return os.getenv("NYLA_DATA_DIR", DEFAULT_DATA_DIR)


def get_log_level() -> int:
    """
    Log level from NYLA_LOG_LEVEL (name or number). Unknown values map to INFO.
    """
    raw = os.getenv("NYLA_LOG_LEVEL", "INFO").strip()
    if raw.isdigit():
        return int(raw)
    level = logging.getLevelName(raw.upper())
    return level if isinstance(level, int) else logging.INFO
