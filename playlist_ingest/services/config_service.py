"""Configuration service — loads, saves, and provides access to AppConfig."""
from __future__ import annotations

import json
import logging
import os

from pydantic import ValidationError as ModelValidationError

from playlist_ingest.models.config import AppConfig, ClassificationRules, Options

logger = logging.getLogger(__name__)


class ConfigService:
    """Manages application configuration with file persistence.

    The config is kept in-memory after first load and re-read on explicit
    ``load()`` or ``reload()`` calls.  Every service that needs an option
    should depend on this service rather than reading the JSON directly.
    """

    def __init__(self, data_dir: str):
        self.data_dir = data_dir
        self.config_file = os.path.join(data_dir, "config.json")
        self._config: AppConfig = AppConfig()

    # ------------------------------------------------------------------
    # Load / Save
    # ------------------------------------------------------------------

    def load(self) -> AppConfig:
        """Load configuration from disk, filling in defaults for missing keys."""
        if os.path.exists(self.config_file):
            try:
                with open(self.config_file) as f:
                    raw = json.load(f)
                self._config = AppConfig.model_validate(raw)
                return self._config
            except (OSError, json.JSONDecodeError, ModelValidationError) as e:
                logger.error(f"Error loading config: {e}")

        self._config = AppConfig()
        return self._config

    def reload(self) -> AppConfig:
        """Alias for ``load()``."""
        return self.load()

    def save(self, config: AppConfig | None = None) -> None:
        """Persist the config to disk."""
        if config is not None:
            self._config = config
        os.makedirs(self.data_dir, exist_ok=True)
        with open(self.config_file, "w") as f:
            json.dump(self._config.model_dump(), f, indent=2)

    @property
    def config(self) -> AppConfig:
        return self._config

    # ------------------------------------------------------------------
    # Convenience accessors
    # ------------------------------------------------------------------

    @property
    def options(self) -> Options:
        return self._config.options

    @property
    def classification(self) -> ClassificationRules:
        return self._config.options.classification

    @property
    def user_agent(self) -> str:
        return self._config.user_agent

    @property
    def batch_size(self) -> int:
        # The store refuses batches above 500.
        return max(1, min(self.options.batch_size, 500))
