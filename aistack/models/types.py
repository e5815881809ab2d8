"""Data types shared by the model cache managers."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

_TIME_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})$"
)


class ModelError(Exception):
    """Raised when a model cache operation fails."""


class Provider(str, Enum):
    """Known model providers."""

    OLLAMA = "ollama"
    LOCALAI = "localai"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def is_valid(cls, value: Any) -> bool:
        """Return True if ``value`` names a known provider."""
        return any(value == member.value for member in cls)


def _coerce_provider(value: Any) -> Provider | str:
    try:
        return Provider(value)
    except ValueError:
        return str(value)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _log_event(logger: logging.Logger, level: int, event: str, message: str, **fields: Any) -> None:
    logger.log(level, "%s: %s %s", event, message, fields, extra={"event": event, "fields": fields})


def format_time(value: datetime) -> str:
    """Format a datetime as RFC 3339 text with trailing fraction zeros trimmed."""
    value = _aware(value)
    text = (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
        f"T{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
    )
    fraction = f"{value.microsecond:06d}".rstrip("0")
    if fraction:
        text += "." + fraction
    offset = value.utcoffset() or timedelta(0)
    seconds = int(offset.total_seconds())
    if seconds == 0:
        return text + "Z"
    sign = "+" if seconds > 0 else "-"
    seconds = abs(seconds)
    return f"{text}{sign}{seconds // 3600:02d}:{seconds % 3600 // 60:02d}"


def parse_time(text: str) -> datetime:
    """Parse RFC 3339 text into an aware datetime; extra fraction digits are truncated."""
    if not isinstance(text, str):
        raise ValueError(f"invalid timestamp: {text!r}")
    match = _TIME_RE.match(text)
    if match is None:
        raise ValueError(f"invalid timestamp: {text!r}")
    year, month, day, hour, minute, second, fraction, zone = match.groups()
    micro = int((fraction or "").ljust(6, "0")[:6])
    if zone in ("Z", "z"):
        tz = timezone.utc
    else:
        sign = -1 if zone[0] == "-" else 1
        delta = timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6]))
        tz = timezone(sign * delta)
    return datetime(
        int(year), int(month), int(day), int(hour), int(minute), int(second), micro, tzinfo=tz
    )


def _require_mapping(data: Any, kind: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise ValueError(f"{kind} must be an object, got {type(data).__name__}")
    return data


@dataclass
class ModelInfo:
    """A cached model entry."""

    name: str
    size: int = 0
    path: str = ""
    last_used: datetime = ZERO_TIME

    def __post_init__(self) -> None:
        self.last_used = _aware(self.last_used)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "size": self.size,
            "path": self.path,
            "last_used": format_time(self.last_used),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ModelInfo:
        data = _require_mapping(data, "model")
        last_used = data.get("last_used")
        return cls(
            name=str(data.get("name") or ""),
            size=int(data.get("size") or 0),
            path=str(data.get("path") or ""),
            last_used=parse_time(last_used) if last_used else ZERO_TIME,
        )


@dataclass
class State:
    """The persisted model cache state of one provider."""

    provider: Provider | str
    items: list[ModelInfo] = field(default_factory=list)
    updated: datetime = ZERO_TIME

    def __post_init__(self) -> None:
        self.updated = _aware(self.updated)

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": str(self.provider),
            "items": [item.to_dict() for item in self.items],
            "updated": format_time(self.updated),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> State:
        data = _require_mapping(data, "state")
        updated = data.get("updated")
        return cls(
            provider=_coerce_provider(data.get("provider") or ""),
            items=[ModelInfo.from_dict(item) for item in data.get("items") or []],
            updated=parse_time(updated) if updated else ZERO_TIME,
        )


@dataclass
class DownloadProgress:
    """A model download progress event."""

    model_name: str
    bytes_downloaded: int = 0
    total_bytes: int = 0
    percentage: float = 0.0
    status: str = ""
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "model_name": self.model_name,
            "bytes_downloaded": self.bytes_downloaded,
        }
        if self.total_bytes:
            result["total_bytes"] = self.total_bytes
        result["percentage"] = self.percentage
        result["status"] = self.status
        if self.error:
            result["error"] = self.error
        return result


@dataclass
class DownloadOptions:
    """Options for a model download."""

    model_name: str
    resume: bool = False


@dataclass
class CacheStats:
    """Summary of a provider's model cache."""

    provider: Provider | str
    total_size: int = 0
    model_count: int = 0
    oldest_model: ModelInfo | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "provider": str(self.provider),
            "total_size": self.total_size,
            "model_count": self.model_count,
        }
        if self.oldest_model is not None:
            result["oldest_model"] = self.oldest_model.to_dict()
        return result