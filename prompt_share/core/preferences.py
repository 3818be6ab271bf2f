"""Persisted client-local preferences (color theme)."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Callable

import structlog

from prompt_share.core.requests import SetTheme
from prompt_share.core.state import AppState, Theme
from prompt_share.core.store import Store

logger = structlog.get_logger()

PREFERENCES_FILE = "preferences.json"


class ThemePreference:
    """Reads and writes the selected theme.

    Without a saved choice the operating-system preference wins.
    """

    def __init__(self, state_dir: Path, system_prefers_dark: bool = False) -> None:
        self.path = Path(state_dir) / PREFERENCES_FILE
        self.system_prefers_dark = system_prefers_dark

    def load(self) -> Theme:
        fallback = Theme.DARK if self.system_prefers_dark else Theme.LIGHT
        if not self.path.exists():
            return fallback
        try:
            saved = json.loads(self.path.read_text()).get("theme")
            return Theme(saved)
        except (OSError, ValueError, AttributeError) as e:
            logger.warning("preferences.load_failed", path=str(self.path), error=str(e))
            return fallback

    def save(self, theme: Theme) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps({"theme": theme.value}))
        except OSError as e:
            logger.warning("preferences.save_failed", path=str(self.path), error=str(e))

    def attach(self, store: Store) -> Callable[[], None]:
        """Apply the saved theme to the store and persist later changes."""
        theme = self.load()
        store.dispatch(SetTheme(theme=theme))
        self.save(theme)

        def persist(previous: AppState, current: AppState) -> None:
            if previous.theme != current.theme:
                self.save(current.theme)

        return store.subscribe(persist)
