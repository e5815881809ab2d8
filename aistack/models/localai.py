"""Cache management for model files in a LocalAI models directory."""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from pathlib import Path

from aistack.models.evict import evict_oldest_model
from aistack.models.state import StateManager
from aistack.models.types import (
    CacheStats,
    ModelError,
    ModelInfo,
    Provider,
    _log_event,
)

_LOGGER = logging.getLogger(__name__)


class LocalAIManager:
    """Manages model files stored in a LocalAI models directory."""

    def __init__(
        self,
        state_dir: str | os.PathLike[str],
        models_path: str | os.PathLike[str] | None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._logger = logger or _LOGGER
        self.state_manager = StateManager(state_dir, Provider.LOCALAI, self._logger)
        self.models_path = os.fspath(models_path) if models_path else ""

    def list(self) -> list[ModelInfo]:
        """List the regular files in the models directory, sorted by name."""
        if not self.models_path:
            return []
        directory = Path(self.models_path)
        if not directory.exists():
            return []

        try:
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda entry: entry.name)
        except OSError as exc:
            raise ModelError(f"failed to read models directory: {exc}") from exc

        models = []
        for entry in entries:
            if entry.is_dir(follow_symlinks=False):
                continue
            try:
                info = entry.stat(follow_symlinks=False)
            except OSError as exc:
                _log_event(
                    self._logger,
                    logging.WARNING,
                    "model.list.stat_failed",
                    "Failed to get file info",
                    file=entry.name,
                    error=str(exc),
                )
                continue
            models.append(
                ModelInfo(
                    name=entry.name,
                    size=info.st_size,
                    path=str(directory / entry.name),
                    last_used=datetime.fromtimestamp(info.st_mtime, timezone.utc),
                )
            )
        return models

    def sync_state(self) -> None:
        """Rebuild the state from the directory, keeping newer last-used times."""
        models = self.list()
        state = self.state_manager.load()
        known = {item.name: item for item in state.items}

        for model in models:
            existing = known.get(model.name)
            if existing is not None and existing.last_used > model.last_used:
                model.last_used = existing.last_used

        state.items = models
        self.state_manager.save(state)

    def delete(self, model_name: str) -> None:
        """Remove a model file and its state entry."""
        _log_event(
            self._logger,
            logging.INFO,
            "model.delete.started",
            "Deleting model",
            provider=str(Provider.LOCALAI),
            model=model_name,
        )

        model_path = Path(self.models_path) / model_name
        if not model_path.exists():
            raise ModelError(f"model file not found: {model_name}")

        try:
            model_path.unlink()
        except OSError as exc:
            raise ModelError(f"failed to remove model file: {exc}") from exc

        try:
            self.state_manager.remove_model(model_name)
        except ModelError as exc:
            _log_event(
                self._logger,
                logging.WARNING,
                "model.delete.state_update_failed",
                "Failed to update state",
                error=str(exc),
            )

        _log_event(
            self._logger,
            logging.INFO,
            "model.delete.completed",
            "Model deleted",
            model=model_name,
            path=str(model_path),
        )

    def get_stats(self) -> CacheStats:
        """Sync the state and return cache statistics."""
        try:
            self.sync_state()
        except ModelError as exc:
            _log_event(
                self._logger,
                logging.WARNING,
                "model.stats.sync_failed",
                "Failed to sync state",
                error=str(exc),
            )
        return self.state_manager.get_stats()

    def evict_oldest(self) -> ModelInfo:
        """Delete the least recently used model and return it."""
        return evict_oldest_model(self.sync_state, self.state_manager, self.delete, self._logger)

    def update_last_used(self, model_name: str) -> None:
        """Mark a model as used now."""
        self.state_manager.update_last_used(model_name)