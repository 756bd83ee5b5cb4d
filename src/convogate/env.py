"""
Environment variable helpers for local development.

Provider API keys are read from the environment when a ``ProviderConfig``
does not carry one. ``load_default_env`` fills the environment from a local
``.env`` file without overriding variables that are already set.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

# Provider name -> environment variable holding its API key.
API_KEY_ENV_VARS = {
    "openai": "OPENAI_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "qianfan": "QIANFAN_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}


def _parse_line(line: str) -> Optional[tuple]:
    stripped = line.strip()
    if not stripped or stripped.startswith("#") or "=" not in stripped:
        return None
    if stripped.startswith("export "):
        stripped = stripped[len("export ") :]
    key, value = stripped.split("=", 1)
    key = key.strip()
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        value = value[1:-1]
    if not key:
        return None
    return key, value


def load_env_if_present(candidate_paths: Iterable[Path]) -> Optional[Path]:
    """
    Load key=value pairs from the first .env-style file that exists.

    Returns:
        The path that was loaded, or None if no candidate exists.
    """
    for env_path in candidate_paths:
        if not env_path.exists() or not env_path.is_file():
            continue
        try:
            text = env_path.read_text()
        except OSError as exc:
            logger.debug("Could not read %s: %s", env_path, exc)
            continue
        for line in text.splitlines():
            parsed = _parse_line(line)
            if parsed is None:
                continue
            key, value = parsed
            if key not in os.environ:
                os.environ[key] = value
        logger.debug("Loaded environment from %s", env_path)
        return env_path
    return None


def load_default_env() -> Optional[Path]:
    """Load from the current directory's .env, then the project root's."""
    cwd = Path.cwd()
    default_candidates = [
        cwd / ".env",
        Path(__file__).resolve().parents[2] / ".env",
    ]
    return load_env_if_present(default_candidates)


def api_key_from_env(provider: str) -> Optional[str]:
    """Return the API key for ``provider`` from its conventional variable, if set."""
    env_var = API_KEY_ENV_VARS.get(provider.lower())
    if env_var is None:
        return None
    return os.getenv(env_var) or None


__all__ = ["API_KEY_ENV_VARS", "load_default_env", "load_env_if_present", "api_key_from_env"]
