"""Model management through the Ollama HTTP API."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

import requests

from aistack.models.evict import evict_oldest_model
from aistack.models.state import StateManager
from aistack.models.types import (
    ZERO_TIME,
    CacheStats,
    DownloadProgress,
    ModelError,
    ModelInfo,
    Provider,
    _log_event,
    _now,
    parse_time,
)

OLLAMA_API_BASE = "http://localhost:11434"
HTTP_TIMEOUT = 5 * 60.0

_LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[DownloadProgress], None]


@dataclass
class _PullProgress:
    status: str = ""
    completed: int = 0
    total: int = 0
    error: str = ""


def _typed(data: Mapping[str, Any], key: str, kind: type, default: Any) -> Any:
    value = data.get(key)
    if value is None:
        return default
    if kind is int:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeError(f"field {key!r} must be a number")
        if isinstance(value, float) and not value.is_integer():
            raise TypeError(f"field {key!r} must be an integer")
        return int(value)
    if not isinstance(value, kind):
        raise TypeError(f"field {key!r} must be of type {kind.__name__}")
    return value


class OllamaManager:
    """Lists, downloads and deletes models of a running Ollama service."""

    def __init__(
        self,
        state_dir: str | os.PathLike[str],
        logger: logging.Logger | None = None,
        api_base: str = OLLAMA_API_BASE,
        session: requests.Session | None = None,
    ) -> None:
        self._logger = logger or _LOGGER
        self.state_manager = StateManager(state_dir, Provider.OLLAMA, self._logger)
        self.api_base = api_base.rstrip("/")
        self.session = session or requests.Session()

    def _close(self, response: requests.Response, context: str) -> None:
        try:
            response.close()
        except Exception as exc:  # closing must never mask the real outcome
            _log_event(
                self._logger,
                logging.WARNING,
                "ollama.response.close_failed",
                "Failed to close HTTP response body",
                context=context,
                error=str(exc),
            )

    def list(self) -> list[ModelInfo]:
        """Return the models the Ollama service currently holds."""
        try:
            response = self.session.get(f"{self.api_base}/api/tags", timeout=HTTP_TIMEOUT)
        except requests.RequestException as exc:
            raise ModelError(f"failed to list models: {exc}") from exc
        try:
            if response.status_code != 200:
                raise ModelError(f"ollama API returned status {response.status_code}")
            try:
                payload = json.loads(response.content)
                return self._models_from_payload(payload)
            except (ValueError, TypeError, KeyError) as exc:
                raise ModelError(f"failed to decode response: {exc}") from exc
        finally:
            self._close(response, "list")

    @staticmethod
    def _models_from_payload(payload: Any) -> list[ModelInfo]:
        if not isinstance(payload, Mapping):
            raise TypeError("response must be an object")
        entries = payload.get("models") or []
        if not isinstance(entries, list):
            raise TypeError("field 'models' must be a list")
        models = []
        for entry in entries:
            if not isinstance(entry, Mapping):
                raise TypeError("model entry must be an object")
            modified = _typed(entry, "modified_at", str, "")
            models.append(
                ModelInfo(
                    name=_typed(entry, "name", str, ""),
                    size=_typed(entry, "size", int, 0),
                    path="",
                    last_used=parse_time(modified) if modified else ZERO_TIME,
                )
            )
        return models

    def download(self, model_name: str, on_progress: ProgressCallback | None = None) -> None:
        """Pull a model, reporting progress events to ``on_progress``."""
        _log_event(
            self._logger,
            logging.INFO,
            "model.download.started",
            "Starting model download",
            provider=str(Provider.OLLAMA),
            model=model_name,
        )
        if on_progress is not None:
            on_progress(DownloadProgress(model_name=model_name, status="started"))

        try:
            response = self.session.post(
                f"{self.api_base}/api/pull",
                json={"name": model_name},
                stream=True,
                timeout=HTTP_TIMEOUT,
            )
        except requests.RequestException as exc:
            _log_event(
                self._logger,
                logging.ERROR,
                "model.download.failed",
                "Failed to start download",
                model=model_name,
                error=str(exc),
            )
            if on_progress is not None:
                on_progress(
                    DownloadProgress(model_name=model_name, status="failed", error=str(exc))
                )
            raise ModelError(f"failed to pull model: {exc}") from exc

        try:
            if response.status_code != 200:
                raise ModelError(f"ollama API returned status {response.status_code}")
            last = self._consume_progress(response.iter_lines(), model_name, on_progress)
        finally:
            self._close(response, "download")

        self._record_download(model_name)

        _log_event(
            self._logger,
            logging.INFO,
            "model.download.completed",
            "Model download completed",
            model=model_name,
            status=last.status,
        )
        if on_progress is not None:
            on_progress(
                DownloadProgress(model_name=model_name, status="completed", percentage=100.0)
            )

    def _record_download(self, model_name: str) -> None:
        try:
            models = self.list()
        except ModelError as exc:
            _log_event(
                self._logger,
                logging.WARNING,
                "model.download.list_failed",
                "Failed to list models after download",
                error=str(exc),
            )
            return
        model = next((m for m in models if m.name == model_name), None)
        if model is None:
            return
        model.last_used = _now()
        try:
            self.state_manager.add_model(model)
        except ModelError as exc:
            _log_event(
                self._logger,
                logging.WARNING,
                "model.download.state_update_failed",
                "Failed to update state",
                error=str(exc),
            )

    def _consume_progress(
        self,
        lines: Iterable[bytes],
        model_name: str,
        on_progress: ProgressCallback | None,
    ) -> _PullProgress:
        last = _PullProgress()
        try:
            for line in lines:
                progress = self._parse_progress_line(line)
                if progress is None:
                    continue
                last = progress
                self._emit_progress(progress, model_name, on_progress)
                if progress.error:
                    _log_event(
                        self._logger,
                        logging.ERROR,
                        "model.download.failed",
                        "Download failed",
                        model=model_name,
                        error=progress.error,
                    )
                    if on_progress is not None:
                        on_progress(
                            DownloadProgress(
                                model_name=model_name, status="failed", error=progress.error
                            )
                        )
                    raise ModelError(f"download failed: {progress.error}")
        except (requests.RequestException, OSError) as exc:
            _log_event(
                self._logger,
                logging.ERROR,
                "model.download.stream_error",
                "Stream error",
                model=model_name,
                error=str(exc),
            )
            raise ModelError(f"stream error: {exc}") from exc
        return last

    def _parse_progress_line(self, line: bytes) -> _PullProgress | None:
        try:
            data = json.loads(line)
            if not isinstance(data, Mapping):
                raise TypeError("progress line must be an object")
            return _PullProgress(
                status=_typed(data, "status", str, ""),
                completed=_typed(data, "completed", int, 0),
                total=_typed(data, "total", int, 0),
                error=_typed(data, "error", str, ""),
            )
        except (ValueError, TypeError) as exc:
            _log_event(
                self._logger,
                logging.WARNING,
                "model.download.parse_error",
                "Failed to parse progress",
                error=str(exc),
            )
            return None

    @staticmethod
    def _emit_progress(
        progress: _PullProgress, model_name: str, on_progress: ProgressCallback | None
    ) -> None:
        if on_progress is None:
            return
        event = DownloadProgress(
            model_name=model_name,
            bytes_downloaded=progress.completed,
            total_bytes=progress.total,
            status="progress",
        )
        if progress.total > 0:
            event.percentage = float(progress.completed) / float(progress.total) * 100
        on_progress(event)

    def delete(self, model_name: str) -> None:
        """Delete a model from Ollama and drop it from the state."""
        _log_event(
            self._logger,
            logging.INFO,
            "model.delete.started",
            "Deleting model",
            provider=str(Provider.OLLAMA),
            model=model_name,
        )
        try:
            response = self.session.delete(
                f"{self.api_base}/api/delete",
                data=json.dumps({"name": model_name}).encode("utf-8"),
                headers={"Content-Type": "application/json"},
                timeout=HTTP_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise ModelError(f"failed to delete model: {exc}") from exc

        try:
            if response.status_code != 200:
                try:
                    body = response.text
                except (requests.RequestException, OSError) as exc:
                    raise ModelError(
                        f"ollama API returned status {response.status_code} "
                        f"and failed to read body: {exc}"
                    ) from exc
                raise ModelError(f"ollama API returned status {response.status_code}: {body}")
        finally:
            self._close(response, "delete")

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

    def sync_state(self) -> None:
        """Rebuild the state from Ollama, keeping recorded last-used times."""
        models = self.list()
        state = self.state_manager.load()
        known = {item.name: item for item in state.items}
        for model in models:
            existing = known.get(model.name)
            if existing is not None:
                model.last_used = existing.last_used
        state.items = models
        self.state_manager.save(state)

    def evict_oldest(self) -> ModelInfo:
        """Delete the least recently used model and return it."""
        return evict_oldest_model(self.sync_state, self.state_manager, self.delete, self._logger)