"""PromptShare client settings.

Supabase credentials, the bootstrap admin list and the upgrade-prompt tuning
come from the environment or `.env`. Mounted Docker secrets override the
Supabase credentials; the admin list reads ADMIN_EMAILS first, then its secret.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings


def _read_secret(name: str) -> str | None:
    """Contents of /run/secrets/<name>, or None when it is not mounted."""
    secret_path = Path(f"/run/secrets/{name}")
    if secret_path.exists():
        return secret_path.read_text().strip()
    return None


def _env_or_secret(env_var: str, secret_name: str) -> str | None:
    """Environment variable, falling back to the mounted secret."""
    return os.getenv(env_var) or _read_secret(secret_name)


class Settings(BaseSettings):
    """Client settings with env var and secret support."""

    supabase_url: str = ""
    supabase_key: str = ""
    log_level: str = "INFO"

    # Bootstrap administrators, comma separated. Matching identities skip role derivation.
    admin_emails: str = ""

    upgrade_cooldown_hours: float = 24.0
    upgrade_warn_ratio: float = 0.8
    engagement_log_cap: int = 100
    state_dir: Path = Path.home() / ".prompt_share"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Mounted credentials win over env and .env values.
        if secret := _read_secret("supabase_url"):
            self.supabase_url = secret
        if secret := _read_secret("supabase_key"):
            self.supabase_key = secret
        if secret := _env_or_secret("ADMIN_EMAILS", "admin_emails"):
            self.admin_emails = secret

    @property
    def admin_allow_list(self) -> frozenset[str]:
        """Normalised set of bootstrap administrator emails."""
        return frozenset(
            email.strip().lower() for email in self.admin_emails.split(",") if email.strip()
        )


@lru_cache
def get_settings() -> Settings:
    """Process-wide settings, read once."""
    return Settings()
