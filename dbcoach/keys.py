"""Credential loading for DB.Coach.

Keys are loaded with this priority:
  1. Environment variables (highest, already set in shell)
  2. ~/.dbcoach/keys.env (user's saved keys)
  3. .env in current directory (project-level)
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from dbcoach.errors import MissingCredentialError

logger = logging.getLogger(__name__)

DBCOACH_HOME = Path.home() / ".dbcoach"
KEYS_FILE = DBCOACH_HOME / "keys.env"

SUPABASE_URL_ENV = "SUPABASE_URL"
SUPABASE_KEY_ENV = "SUPABASE_KEY"


def load_keys_env() -> None:
    """Load keys from ~/.dbcoach/keys.env and .env into os.environ.

    Existing env vars are NOT overwritten.
    """
    for env_file in (KEYS_FILE, Path.cwd() / ".env"):
        if env_file.is_file():
            _load_env_file(env_file)


def _load_env_file(path: Path) -> None:
    """Parse a simple KEY=VALUE .env file and set vars that aren't already set."""
    try:
        for line in path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip().strip("'\"")
            if key and not os.environ.get(key):
                os.environ[key] = value
                logger.debug("Loaded %s from %s", key, path)
    except OSError:
        logger.debug("Could not read %s", path)


def require_key(env_var: str) -> str:
    """Return the value of a required credential.

    Raises:
        MissingCredentialError: If the variable is unset or empty.
    """
    value = os.environ.get(env_var, "")
    if not value:
        raise MissingCredentialError(env_var)
    return value


def supabase_credentials() -> tuple[str, str]:
    """Return (url, key) for Supabase, raising if either is missing."""
    return require_key(SUPABASE_URL_ENV), require_key(SUPABASE_KEY_ENV)
