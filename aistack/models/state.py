"""Persistence of the per-provider model cache state."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import replace
from pathlib import Path

from aistack.models.types import (
    CacheStats,
    ModelError,
    ModelInfo,
    Provider,
    State,
    _coerce_provider,
    _log_event,
    _now,
)

STATE_FILE_NAME = "models_state.json"

_LOGGER = logging.getLogger(__name__)


class StateManager:
    """Loads and saves the model state file of one provider."""

    def __init__(
        self,
        state_dir: str | os.PathLike[str],
        provider: Provider | str,
        logger: logging.Logger | None = None,
    ) -> None:
        self.state_dir = Path(state_dir)
        self.provider = _coerce_provider(provider)
        self._logger = logger or _LOGGER

    @property
    def state_path(self) -> Path:
        return self.state_dir / f"{self.provider!s}_{STATE_FILE_NAME}"

    def load(self) -> State:
        """Read the state; a missing file yields an empty state."""
        try:
            text = self.state_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return State(provider=self.provider, items=[], updated=_now())
        except OSError as exc:
            raise ModelError(f"failed to read state file: {exc}") from exc
        try:
            return State.from_dict(json.loads(text))
        except (ValueError, TypeError) as exc:
            raise ModelError(f"failed to unmarshal state: {exc}") from exc

    def save(self, state: State) -> None:
        """Write the state atomically through a temporary file."""
        try:
            self.state_dir.mkdir(mode=0o750, parents=True, exist_ok=True)
        except OSError as exc:
            raise ModelError(f"failed to create state directory: {exc}") from exc

        state.updated = _now()
        state.provider = self.provider
        data = json.dumps(state.to_dict(), indent=2)

        path = self.state_path
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            tmp_path.write_text(data, encoding="utf-8")
        except OSError as exc:
            raise ModelError(f"failed to write temp state file: {exc}") from exc

        try:
            os.replace(tmp_path, path)
        except OSError as exc:
            try:
                tmp_path.unlink()
            except FileNotFoundError:
                pass
            except OSError as cleanup_exc:
                _log_event(
                    self._logger,
                    logging.WARNING,
                    "models.state.tmp_cleanup_failed",
                    "Failed to remove temp state file",
                    error=str(cleanup_exc),
                    path=str(tmp_path),
                )
            raise ModelError(f"failed to rename state file: {exc}") from exc

        _log_event(
            self._logger,
            logging.INFO,
            "models.state.saved",
            "Models state saved",
            provider=str(self.provider),
            count=len(state.items),
        )

    def add_model(self, model: ModelInfo) -> None:
        """Add a model, replacing any entry with the same name."""
        state = self.load()
        index = next(
            (i for i, item in enumerate(state.items) if item.name == model.name), None
        )
        if index is None:
            state.items.append(model)
        else:
            state.items[index] = model
        self.save(state)

    def remove_model(self, model_name: str) -> None:
        """Drop every entry with the given name."""
        state = self.load()
        state.items = [item for item in state.items if item.name != model_name]
        self.save(state)

    def update_last_used(self, model_name: str) -> None:
        """Set a model's last-used time to now."""
        state = self.load()
        for item in state.items:
            if item.name == model_name:
                item.last_used = _now()
                self.save(state)
                return
        raise ModelError(f"model not found: {model_name}")

    def get_stats(self) -> CacheStats:
        """Summarise size, count and the least recently used model."""
        state = self.load()
        oldest = min(state.items, key=lambda item: item.last_used, default=None)
        return CacheStats(
            provider=self.provider,
            total_size=sum(item.size for item in state.items),
            model_count=len(state.items),
            oldest_model=replace(oldest) if oldest is not None else None,
        )

    def get_oldest_models(self) -> list[ModelInfo]:
        """Return copies of all models, least recently used first."""
        state = self.load()
        return sorted((replace(item) for item in state.items), key=lambda item: item.last_used)

    def clear(self) -> None:
        """Remove all models from the state."""
        self.save(State(provider=self.provider, items=[], updated=_now()))