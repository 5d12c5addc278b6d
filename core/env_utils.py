"""Helpers for loading optional .env files and validating required variables."""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Sequence

from dotenv import load_dotenv  # type: ignore

from core.logging import get_logger

logger = get_logger(__name__)


def load_dotenv_if_available(path: Path | None = None) -> bool:
    """Load environment variables from a .env file when the file exists."""

    env_path = path or Path(os.getenv("EXCEPTION_ENV_FILE", ".env"))
    try:
        if env_path.exists():
            load_dotenv(dotenv_path=env_path, override=False)
            logger.debug("Loaded environment variables from %s", env_path)
            return True
    except Exception as exc:  # pragma: no cover - best effort
        logger.warning("Failed to load .env file %s: %s", env_path, exc)
    return False


def missing_env_vars(required: Sequence[str]) -> List[str]:
    return sorted(name for name in required if not os.getenv(name))
