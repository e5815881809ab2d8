"""Encrypted on-disk storage of named secrets."""

from __future__ import annotations

import json
import logging
import os
import secrets
import stat
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from aistack.models.types import format_time, parse_time
from aistack.vault.crypto import CryptoError, decrypt, derive_key, encrypt

INDEX_FILE_NAME = "secrets_index.json"
SECRET_FILE_MODE = 0o600

_LOGGER = logging.getLogger(__name__)


class SecretStoreError(Exception):
    """Raised when a secret store operation fails."""


class SecretNotFoundError(SecretStoreError):
    """Raised when a named secret does not exist."""


@dataclass
class _IndexEntry:
    name: str
    last_rotated: datetime


@dataclass
class _Index:
    entries: list[_IndexEntry] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entries": [
                {"name": entry.name, "last_rotated": format_time(entry.last_rotated)}
                for entry in self.entries
            ]
        }

    @classmethod
    def from_dict(cls, data: Any) -> _Index:
        if not isinstance(data, dict):
            raise TypeError("index must be an object")
        entries = []
        for item in data.get("entries") or []:
            if not isinstance(item, dict):
                raise TypeError("index entry must be an object")
            rotated = item.get("last_rotated")
            entries.append(
                _IndexEntry(
                    name=str(item.get("name") or ""),
                    last_rotated=parse_time(rotated)
                    if rotated
                    else datetime(1, 1, 1, tzinfo=timezone.utc),
                )
            )
        return cls(entries=entries)


def _log(logger: logging.Logger, level: int, event: str, message: str, **fields: Any) -> None:
    logger.log(level, "%s: %s %s", event, message, fields, extra={"event": event, "fields": fields})


def _write_private(path: Path, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, SECRET_FILE_MODE)
    with os.fdopen(fd, "wb") as fh:
        fh.write(data)


def _load_or_generate_passphrase(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except FileNotFoundError:
        pass
    except OSError as exc:
        raise SecretStoreError(f"failed to read passphrase file: {exc}") from exc

    generated = secrets.token_hex(32).encode()
    try:
        path.parent.mkdir(mode=0o750, parents=True, exist_ok=True)
    except OSError as exc:
        raise SecretStoreError(f"failed to create passphrase directory: {exc}") from exc
    try:
        _write_private(path, generated)
    except OSError as exc:
        raise SecretStoreError(f"failed to write passphrase: {exc}") from exc
    return generated


class SecretStore:
    """Stores secrets encrypted with a key derived from a local passphrase file."""

    def __init__(
        self,
        secrets_dir: str | os.PathLike[str],
        passphrase_file: str | os.PathLike[str],
        logger: logging.Logger | None = None,
    ) -> None:
        self.secrets_dir = Path(secrets_dir)
        self.passphrase_file = Path(passphrase_file)
        self._logger = logger or _LOGGER
        try:
            self.secrets_dir.mkdir(mode=0o750, parents=True, exist_ok=True)
        except OSError as exc:
            raise SecretStoreError(f"failed to create secrets directory: {exc}") from exc
        try:
            loaded = _load_or_generate_passphrase(self.passphrase_file)
        except SecretStoreError as exc:
            raise SecretStoreError(f"failed to load passphrase: {exc}") from exc
        self._key = derive_key(loaded)

    @property
    def index_path(self) -> Path:
        return self.secrets_dir / INDEX_FILE_NAME

    def _secret_path(self, name: str) -> Path:
        return self.secrets_dir / f"{name}.enc"

    def store_secret(self, name: str, value: bytes) -> None:
        """Encrypt and store ``value`` under ``name``."""
        try:
            encrypted = encrypt(value, self._key)
        except CryptoError as exc:
            raise SecretStoreError(f"encryption failed: {exc}") from exc

        path = self._secret_path(name)
        try:
            _write_private(path, encrypted)
        except OSError as exc:
            raise SecretStoreError(f"failed to write secret: {exc}") from exc

        try:
            self.verify_permissions(path)
        except (SecretStoreError, OSError) as exc:
            _log(
                self._logger,
                logging.WARNING,
                "secrets.permissions.invalid",
                "Secret file has incorrect permissions",
                path=str(path),
                error=str(exc),
            )

        try:
            self._update_index(name)
        except (SecretStoreError, OSError) as exc:
            _log(
                self._logger,
                logging.WARNING,
                "secrets.index.update_failed",
                "Failed to update secrets index",
                name=name,
                error=str(exc),
            )

        _log(self._logger, logging.INFO, "secrets.stored", "Secret stored successfully", name=name)

    def retrieve_secret(self, name: str) -> bytes:
        """Read and decrypt the secret stored under ``name``."""
        path = self._secret_path(name)
        try:
            encrypted = path.read_bytes()
        except FileNotFoundError as exc:
            raise SecretNotFoundError(f"secret not found: {name}") from exc
        except OSError as exc:
            raise SecretStoreError(f"failed to read secret: {exc}") from exc

        try:
            self.verify_permissions(path)
        except (SecretStoreError, OSError):
            _log(
                self._logger,
                logging.WARNING,
                "secrets.permissions.warning",
                "Secret file permissions should be 600",
                path=str(path),
            )

        try:
            decrypted = decrypt(encrypted, self._key)
        except CryptoError as exc:
            raise SecretStoreError(f"decryption failed: {exc}") from exc

        _log(
            self._logger, logging.DEBUG, "secrets.retrieved", "Secret retrieved successfully", name=name
        )
        return decrypted

    def delete_secret(self, name: str) -> None:
        """Remove the secret stored under ``name``."""
        path = self._secret_path(name)
        try:
            path.unlink()
        except FileNotFoundError as exc:
            raise SecretNotFoundError(f"secret not found: {name}") from exc
        except OSError as exc:
            raise SecretStoreError(f"failed to delete secret: {exc}") from exc

        try:
            self._remove_from_index(name)
        except (SecretStoreError, OSError) as exc:
            _log(
                self._logger,
                logging.WARNING,
                "secrets.index.remove_failed",
                "Failed to remove from secrets index",
                name=name,
                error=str(exc),
            )

        _log(self._logger, logging.INFO, "secrets.deleted", "Secret deleted successfully", name=name)

    def list_secrets(self) -> list[str]:
        """Return the names recorded in the index, in insertion order."""
        return [entry.name for entry in self._load_index().entries]

    def verify_permissions(self, path: str | os.PathLike[str]) -> None:
        """Raise :class:`SecretStoreError` unless ``path`` has mode 600."""
        mode = stat.S_IMODE(os.stat(path).st_mode)
        if mode != SECRET_FILE_MODE:
            raise SecretStoreError(
                f"file has permissions {mode:o}, expected {SECRET_FILE_MODE:o}"
            )

    def _update_index(self, name: str) -> None:
        try:
            index = self._load_index()
        except SecretStoreError:
            index = _Index()
        now = datetime.now(timezone.utc)
        entry = next((e for e in index.entries if e.name == name), None)
        if entry is None:
            index.entries.append(_IndexEntry(name=name, last_rotated=now))
        else:
            entry.last_rotated = now
        self._save_index(index)

    def _remove_from_index(self, name: str) -> None:
        index = self._load_index()
        index.entries = [entry for entry in index.entries if entry.name != name]
        self._save_index(index)

    def _load_index(self) -> _Index:
        try:
            text = self.index_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return _Index()
        except OSError as exc:
            raise SecretStoreError(f"failed to read index: {exc}") from exc
        try:
            return _Index.from_dict(json.loads(text))
        except (ValueError, TypeError) as exc:
            raise SecretStoreError(f"failed to parse index: {exc}") from exc

    def _save_index(self, index: _Index) -> None:
        data = json.dumps(index.to_dict(), indent=2).encode("utf-8")
        try:
            _write_private(self.index_path, data)
        except OSError as exc:
            raise SecretStoreError(f"failed to write index: {exc}") from exc