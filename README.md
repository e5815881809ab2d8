# aistack

A library for managing a local AI model cache (LocalAI model files and models held by an Ollama service) and a small encrypted secret store.

## Installation

```
pip install .
pip install ".[test]"   # with the test dependencies
```

## Model cache

Each provider keeps its state in `<state_dir>/<provider>_models_state.json`. The file records every model with its name, size, path and last-used time. The file is written atomically through a temporary file that is then renamed into place. Timestamps are stored as RFC 3339 text.

The managers log through the standard `logging` module. Each of them takes an optional `logging.Logger`. If you leave it out, a module-level logger is used.

Failures raise `aistack.models.types.ModelError`.

### LocalAI

For LocalAI, the models are the regular files in a models directory. Sub-directories are skipped. A file's modification time is its initial last-used time.

```python
import logging
from aistack.models.localai import LocalAIManager

logger = logging.getLogger("aistack")
manager = LocalAIManager("/var/lib/aistack", "/var/lib/localai/models", logger)

for model in manager.list():             # sorted by file name
    print(model.name, model.size)

stats = manager.get_stats()              # syncs state, then reports totals
print(stats.model_count, stats.total_size, stats.oldest_model)

manager.update_last_used("model.gguf")
evicted = manager.evict_oldest()         # deletes the least recently used file
```

- `sync_state()` rebuilds the state from the directory. If a model already has a newer last-used time in the state, that time is kept.
- `delete(name)` removes the file and its state entry. It raises `ModelError` if the file does not exist.
- If the models directory is missing or was not given, `list()` returns an empty list.

### Ollama

`OllamaManager` talks to the Ollama HTTP API. The default address is `http://localhost:11434` (`OLLAMA_API_BASE`), and requests time out after five minutes. You can pass a different `api_base` or your own `requests.Session`.

```python
from aistack.models.ollama import OllamaManager

manager = OllamaManager("/var/lib/aistack", logger)
manager.download("llama3", on_progress=lambda p: print(p.status, p.percentage))
manager.delete("llama3")
```

- `download()` posts to `/api/pull` and reads the streamed progress lines. It calls `on_progress` with `DownloadProgress` events whose status is `started`, `progress`, `completed` or `failed`. After a successful pull, the model is recorded in the state with the current time as its last-used time.
- `list()` reads `/api/tags`.
- `delete()` sends a DELETE request to `/api/delete`.
- `sync_state()` keeps the last-used times already recorded in the state.

### Shared pieces

Both managers provide `list`, `sync_state`, `get_stats`, `delete` and `evict_oldest`.

The persistence layer underneath both is `aistack.models.state.StateManager`. Its methods are:

- `load`
- `save`
- `add_model`
- `remove_model`
- `update_last_used`
- `get_stats`
- `get_oldest_models`
- `clear`

`aistack.models.evict.evict_oldest_model` carries out the shared eviction step: sync, pick the oldest, delete it.

The data types live in `aistack.models.types`:

- `Provider`
- `ModelInfo`
- `State`
- `DownloadProgress`
- `DownloadOptions`
- `CacheStats`
- `format_time` and `parse_time`

## Secret store

Secrets are encrypted with NaCl secretbox. The key is the SHA-256 of a passphrase file's contents. If the passphrase file does not exist, a random 64-character hex passphrase is generated and written to it with mode 600. Each secret is stored as `<name>.enc` with mode 600, and the names are kept in `secrets_index.json`.

```python
from aistack.vault.store import SecretStore

store = SecretStore("/var/lib/aistack/secrets", "/var/lib/aistack/.passphrase", logger)
store.store_secret("api", b"token")
print(store.retrieve_secret("api"))
print(store.list_secrets())
store.delete_secret("api")
```

- Retrieving or deleting a secret that does not exist raises `SecretNotFoundError`. This is a subclass of `SecretStoreError`.
- `verify_permissions(path)` raises `SecretStoreError` unless the file's mode is exactly 600.

The functions in `aistack.vault.crypto` can also be used on their own:

- `derive_key`
- `encrypt`, which returns the nonce followed by the ciphertext
- `decrypt`, which raises `CryptoError` on a wrong key, corrupted data or input that is too short

## What this package does not do

This is a library only. It has no command-line program, no server and no interactive screen. It does not configure logging. It does not start, install or supervise Ollama or LocalAI; the Ollama manager only talks to a service that is already running.

## Tests

```
pytest
```