"""Eviction of the least recently used model."""

from __future__ import annotations

import logging
from collections.abc import Callable

from aistack.models.state import StateManager
from aistack.models.types import ModelError, ModelInfo, _log_event

_LOGGER = logging.getLogger(__name__)


def evict_oldest_model(
    sync_state: Callable[[], None],
    state_manager: StateManager,
    delete_model: Callable[[str], None],
    logger: logging.Logger | None = None,
) -> ModelInfo:
    """Sync the state, delete the least recently used model and return it."""
    logger = logger or _LOGGER
    sync_state()

    oldest_models = state_manager.get_oldest_models()
    if not oldest_models:
        raise ModelError("no models to evict")

    oldest = oldest_models[0]
    _log_event(
        logger,
        logging.INFO,
        "model.evict.started",
        "Evicting oldest model",
        model=oldest.name,
        last_used=oldest.last_used.isoformat(),
        size=oldest.size,
    )

    try:
        delete_model(oldest.name)
    except (ModelError, OSError) as exc:
        raise ModelError(f"failed to delete oldest model: {exc}") from exc

    _log_event(
        logger,
        logging.INFO,
        "model.evict.completed",
        "Oldest model evicted",
        model=oldest.name,
        size=oldest.size,
    )
    return oldest