import json
import os
import stat
import time

import pytest

from aistack.models.types import parse_time
from aistack.vault.store import SecretNotFoundError, SecretStore, SecretStoreError

SECRET_NAME = "test-secret"


@pytest.fixture
def dirs(tmp_path):
    return tmp_path / "secrets", tmp_path / ".passphrase"


@pytest.fixture
def store(dirs):
    secrets_dir, passphrase_file = dirs
    return SecretStore(secrets_dir, passphrase_file)


def _mode(path):
    return stat.S_IMODE(os.stat(path).st_mode)


def test_new_secret_store_creates_files(dirs):
    secrets_dir, passphrase_file = dirs
    SecretStore(secrets_dir, passphrase_file)
    assert secrets_dir.is_dir()
    assert passphrase_file.is_file()
    assert _mode(passphrase_file) == 0o600
    assert len(passphrase_file.read_bytes()) == 64


@pytest.mark.parametrize(
    "label, value",
    [
        ("simple", b"secret"),
        ("empty", b""),
        ("binary", bytes([0x00, 0x01, 0x02, 0xFF])),
        ("long", b"secret" * 20),
    ],
)
def test_store_and_retrieve(store, dirs, label, value):
    secrets_dir, _ = dirs
    name = f"test-secret-{label}"
    store.store_secret(name, value)
    secret_path = secrets_dir / f"{name}.enc"
    assert secret_path.is_file()
    assert _mode(secret_path) == 0o600
    assert secret_path.read_bytes() != value
    assert store.retrieve_secret(name) == value


def test_retrieve_nonexistent(store):
    with pytest.raises(SecretNotFoundError) as info:
        store.retrieve_secret("nonexistent")
    assert str(info.value) == "secret not found: nonexistent"


def test_delete_secret(store, dirs):
    secrets_dir, _ = dirs
    store.store_secret(SECRET_NAME, b"secret")
    store.delete_secret(SECRET_NAME)
    assert not (secrets_dir / f"{SECRET_NAME}.enc").exists()
    assert store.list_secrets() == []
    with pytest.raises(SecretNotFoundError):
        store.retrieve_secret(SECRET_NAME)


def test_delete_nonexistent(store):
    with pytest.raises(SecretNotFoundError) as info:
        store.delete_secret("nonexistent")
    assert str(info.value) == "secret not found: nonexistent"


def test_list_secrets(store):
    assert store.list_secrets() == []
    names = ["secret1", "secret2", "secret3"]
    for name in names:
        store.store_secret(name, b"secret")
    assert store.list_secrets() == names


def test_index_updates_last_rotated(store, dirs):
    secrets_dir, _ = dirs
    index_path = secrets_dir / "secrets_index.json"

    store.store_secret(SECRET_NAME, b"secret")
    entries = json.loads(index_path.read_text())["entries"]
    assert [entry["name"] for entry in entries] == [SECRET_NAME]
    old_rotated = parse_time(entries[0]["last_rotated"])
    assert _mode(index_path) == 0o600

    time.sleep(0.01)
    store.store_secret(SECRET_NAME, b"token")
    entries = json.loads(index_path.read_text())["entries"]
    assert len(entries) == 1
    assert parse_time(entries[0]["last_rotated"]) > old_rotated
    assert store.retrieve_secret(SECRET_NAME) == b"token"


def test_permissions_verification(store, dirs):
    secrets_dir, _ = dirs
    store.store_secret(SECRET_NAME, b"secret")
    secret_path = secrets_dir / f"{SECRET_NAME}.enc"
    assert store.verify_permissions(secret_path) is None
    os.chmod(secret_path, 0o644)
    with pytest.raises(SecretStoreError) as info:
        store.verify_permissions(secret_path)
    assert "644" in str(info.value)


def test_retrieve_with_loose_permissions_still_works(store, dirs):
    secrets_dir, _ = dirs
    store.store_secret(SECRET_NAME, b"secret")
    os.chmod(secrets_dir / f"{SECRET_NAME}.enc", 0o644)
    assert store.retrieve_secret(SECRET_NAME) == b"secret"


def test_persistent_passphrase(dirs):
    secrets_dir, passphrase_file = dirs
    first = SecretStore(secrets_dir, passphrase_file)
    first.store_secret(SECRET_NAME, b"secret")
    second = SecretStore(secrets_dir, passphrase_file)
    assert second.retrieve_secret(SECRET_NAME) == b"secret"


def test_changed_passphrase_fails_decryption(dirs):
    secrets_dir, passphrase_file = dirs
    first = SecretStore(secrets_dir, passphrase_file)
    first.store_secret(SECRET_NAME, b"secret")
    passphrase_file.write_bytes(b"placeholder")
    second = SecretStore(secrets_dir, passphrase_file)
    with pytest.raises(SecretStoreError) as info:
        second.retrieve_secret(SECRET_NAME)
    assert str(info.value).startswith("decryption failed")


def test_corrupted_index_raises_on_list(store, dirs):
    secrets_dir, _ = dirs
    (secrets_dir / "secrets_index.json").write_text("{not json")
    with pytest.raises(SecretStoreError) as info:
        store.list_secrets()
    assert str(info.value).startswith("failed to parse index")


def test_store_recovers_from_corrupted_index(store, dirs):
    secrets_dir, _ = dirs
    (secrets_dir / "secrets_index.json").write_text("{not json")
    store.store_secret(SECRET_NAME, b"secret")
    assert store.list_secrets() == [SECRET_NAME]