"""
SHIELDCORE Persistence

The core never owns storage. It reads and writes opaque blobs through a
``KeyValueStore`` and defines the snapshot format those blobs carry.

Snapshot format (version 2):
- Canonical JSON: sorted keys, compact separators, UTF-8.
- Spent nullifiers are ``{tree_number, nullifier}`` pairs; a nullifier is
  only unique within its tree.
- Validated against ``schemas/sync-snapshot.schema.json`` (JSON Schema
  draft 2020-12); sub-schemas are resolved through a ``referencing``
  registry built from every ``*.schema.json`` shipped with the package.
- ``encode(decode(blob)) == blob`` for every blob ``encode`` produced.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Union

from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from shieldcore.errors import SnapshotError

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 2
SCHEMA_DIR = Path(__file__).resolve().parent / "schemas"
SNAPSHOT_SCHEMA = "sync-snapshot.schema.json"


# =============================================================================
# KEY-VALUE STORES
# =============================================================================

class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[bytes]:
        ...

    def set(self, key: str, value: bytes) -> None:
        ...


class InMemoryKeyValueStore:
    """Dict-backed store for tests."""

    def __init__(self):
        self._data: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(value)

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._data)


class FileKeyValueStore:
    """
    One file per key under ``directory``.

    Writes go to a temporary file in the same directory and are moved into
    place with ``os.replace``, so a reader sees the old or the new blob.
    """

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in key)
        if not safe or safe in (".", ".."):
            raise ValueError(f"Invalid store key: {key!r}")
        return self.directory / safe

    def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def set(self, key: str, value: bytes) -> None:
        path = self._path(key)
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(value)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise


# =============================================================================
# SNAPSHOT CODEC
# =============================================================================

@lru_cache(maxsize=1)
def _schema_registry(schema_dir: Path = SCHEMA_DIR) -> Registry:
    """Registry of every schema shipped with the package, keyed by ``$id``."""
    resources = []
    for path in sorted(schema_dir.glob("*.schema.json")):
        schema = json.loads(path.read_text(encoding="utf-8"))
        resources.append((schema["$id"], Resource.from_contents(schema, default_specification=DRAFT202012)))
    return Registry().with_resources(resources)


@lru_cache(maxsize=1)
def snapshot_validator(schema_dir: Path = SCHEMA_DIR) -> Draft202012Validator:
    schema = json.loads((schema_dir / SNAPSHOT_SCHEMA).read_text(encoding="utf-8"))
    return Draft202012Validator(schema, registry=_schema_registry(schema_dir))


def canonical_bytes(obj: Any) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def validate_snapshot(snapshot: Any) -> List[str]:
    """Schema errors of a snapshot document, empty if valid."""
    errors = sorted(snapshot_validator().iter_errors(snapshot), key=lambda e: list(e.absolute_path))
    return [f"{'/'.join(str(p) for p in e.absolute_path) or '<root>'}: {e.message}" for e in errors]


class SnapshotCodec:
    """Versioned, schema-checked encoding of sync engine snapshots."""

    def encode(self, snapshot: Dict[str, Any]) -> bytes:
        self._check(snapshot)
        return canonical_bytes(snapshot)

    def decode(self, blob: bytes) -> Dict[str, Any]:
        try:
            snapshot = json.loads(bytes(blob).decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise SnapshotError(f"Snapshot is not valid JSON: {e}") from e
        self._check(snapshot)
        return snapshot

    def _check(self, snapshot: Any) -> None:
        if not isinstance(snapshot, dict):
            raise SnapshotError("Snapshot must be a JSON object")
        version = snapshot.get("version")
        if version != SNAPSHOT_VERSION:
            raise SnapshotError(f"Unsupported snapshot version {version!r}", version=version)
        errors = validate_snapshot(snapshot)
        if errors:
            logger.warning("Snapshot failed validation: %s", errors[0])
            raise SnapshotError(f"Snapshot failed validation: {errors[0]}", errors=errors)
