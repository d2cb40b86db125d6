"""Secret management for agentkit.

Secrets are loaded from .env.secrets files and cached.

Priority order:
1. Environment variables (os.environ)
2. .env.secrets file in the working directory (cached)
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from dotenv import dotenv_values

SECRETS_FILE = ".env.secrets"


@lru_cache(maxsize=1)
def _load_secrets(secrets_path: Path | None = None) -> dict[str, str | None]:
    """Load and cache a .env.secrets file."""
    path = secrets_path or Path(SECRETS_FILE)
    if path.exists():
        return dotenv_values(path)
    return {}


def fetch_secret(
    key: str,
    default: str | None = None,
    secrets_path: Path | None = None,
) -> str | None:
    """Fetch a secret from environment or .env.secrets.

    Real environment variables take precedence so tests can use
    monkeypatch.setenv()/delenv().

    Example:
        >>> fetch_secret("ANTHROPIC_API_KEY")
        'sk-ant-...'
    """
    value = os.environ.get(key)
    if value is not None:
        return value

    secrets = _load_secrets(secrets_path)
    if secrets.get(key) is not None:
        return secrets[key]

    return default


def clear_secret_cache() -> None:
    """Clear the secrets cache (after .env.secrets changes or in tests)."""
    _load_secrets.cache_clear()
