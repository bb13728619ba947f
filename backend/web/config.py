"""
Configuration and startup security checks for a peersync node.

Why: A node exposes endpoints that overwrite its whole database. A production
deployment without a real shared secret, or with TLS to Postgres explicitly
disabled, must not come up at all.

Permissions: The caller needs no special privileges. The function simply reads
environment variables and raises `SystemExit` on fatal misconfiguration.
"""
from __future__ import annotations

import os

_PLACEHOLDER_PREFIXES = ("CHANGE_ME", "DUMMY")
_MIN_REGISTRATION_KEY_LENGTH = 16


def _is_prod_like(env: str) -> bool:
    env_l = (env or "").lower()
    return env_l in {"prod", "production", "stage", "staging"}


def ensure_secure_config_on_startup() -> None:
    """Fail fast on insecure production configuration.

    Intent: Abort process startup when obviously insecure settings are detected
    in production/staging. Development remains permissive for convenience.

    Checks:
    - SYNC_REGISTRATION_KEY must be set, not a placeholder, and at least 16 chars.
    - DATABASE_URL must be set and must not explicitly disable TLS.
    """

    env = os.getenv("PEERSYNC_ENV", "dev")
    if not _is_prod_like(env):
        return  # dev/test remain permissive

    key = (os.getenv("SYNC_REGISTRATION_KEY", "") or "").strip()
    if not key or key.upper().startswith(_PLACEHOLDER_PREFIXES):
        raise SystemExit(
            "Refusing to start: SYNC_REGISTRATION_KEY is unset or a placeholder in production."
        )
    if len(key) < _MIN_REGISTRATION_KEY_LENGTH:
        raise SystemExit(
            f"Refusing to start: SYNC_REGISTRATION_KEY must be at least {_MIN_REGISTRATION_KEY_LENGTH} characters in production."
        )

    dsn = (os.getenv("DATABASE_URL", "") or "").strip()
    if not dsn:
        raise SystemExit("Refusing to start: DATABASE_URL is not configured.")
    if "sslmode=disable" in dsn:
        raise SystemExit(
            "Refusing to start: DATABASE_URL contains sslmode=disable in production. Use sslmode=require or verify TLS."
        )
