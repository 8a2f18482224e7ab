from __future__ import annotations

import json
from typing import Dict, Iterable, List, Optional

import pytest
import werkzeug

from missions_backend import app as backend_app
from missions_backend.catalog_store import SNAPSHOT_COLUMNS, CatalogReadError, CatalogWriteError
from missions_backend.storage_client import (
    StorageEntry,
    StorageObjectNotFoundError,
    StorageRequestError,
)

if not hasattr(werkzeug, "__version__"):
    werkzeug.__version__ = "0"


class FakeStorage:
    """In-memory bucket tree keyed by object path."""

    def __init__(self, files: Optional[Dict[str, object]] = None, buckets: Iterable[str] = ("missions-json",)):
        self.buckets = list(buckets)
        self.files: Dict[str, bytes] = {}
        for path, content in (files or {}).items():
            self.put(path, content)
        self.download_errors: Dict[str, str] = {}
        self.list_error: Optional[str] = None
        self.buckets_error: Optional[str] = None
        self.downloads: List[str] = []
        self.removed: List[str] = []

    def put(self, path: str, content) -> None:
        if isinstance(content, bytes):
            self.files[path] = content
        elif isinstance(content, str):
            self.files[path] = content.encode("utf-8")
        else:
            self.files[path] = json.dumps(content).encode("utf-8")

    def list_buckets(self) -> List[str]:
        if self.buckets_error:
            raise StorageRequestError(self.buckets_error)
        return list(self.buckets)

    def list(self, bucket: str, prefix: str = "") -> List[StorageEntry]:
        if self.list_error:
            raise StorageRequestError(self.list_error, bucket=bucket, path=prefix)
        base = f"{prefix}/" if prefix else ""
        folders: List[str] = []
        entries: List[StorageEntry] = []
        for path in sorted(self.files):
            if not path.startswith(base):
                continue
            rest = path[len(base):]
            if "/" in rest:
                folder = rest.split("/", 1)[0]
                if folder not in folders:
                    folders.append(folder)
                continue
            entries.append(
                StorageEntry(
                    name=rest,
                    id=f"id-{path}",
                    updated_at="2024-01-01T00:00:00Z",
                    size=len(self.files[path]),
                )
            )
        return [StorageEntry(name=folder) for folder in folders] + entries

    def download(self, bucket: str, path: str) -> bytes:
        self.downloads.append(path)
        if path in self.download_errors:
            raise StorageRequestError(self.download_errors[path], bucket=bucket, path=path)
        if path not in self.files:
            raise StorageObjectNotFoundError(f"{bucket}:{path} was not found", bucket=bucket, path=path)
        return self.files[path]

    def upload(self, bucket: str, path: str, content: bytes, *, content_type: str = "application/json", upsert: bool = True) -> None:
        self.files[path] = content

    def remove(self, bucket: str, paths: Iterable[str]) -> None:
        for path in paths:
            self.removed.append(path)
            self.files.pop(path, None)


class FakeCatalog:
    """Missions table kept in a list, enforcing the unique columns."""

    def __init__(self, rows: Optional[List[dict]] = None, *, accepts_mission_data: bool = True):
        self.rows: List[dict] = [dict(row) for row in (rows or [])]
        self.accepts_mission_data = accepts_mission_data
        self.read_error: Optional[str] = None
        self.insert_error: Optional[str] = None
        self.insert_attempts: List[dict] = []
        self.updates: List[tuple] = []

    def select_all(self, columns: Iterable[str] = SNAPSHOT_COLUMNS) -> List[dict]:
        if self.read_error:
            raise CatalogReadError(self.read_error)
        return [{column: row.get(column) for column in columns} for row in self.rows]

    def list_missions(self) -> List[dict]:
        return sorted((dict(row) for row in self.rows), key=lambda row: row.get("order_no") or 0)

    def _check(self, values: dict, ignore: Optional[dict] = None) -> None:
        if "mission_data" in values and not self.accepts_mission_data:
            raise CatalogWriteError("table missions has no column named mission_data")
        for column in ("mission_uid", "order_no"):
            if column not in values:
                continue
            for row in self.rows:
                if row is not ignore and row.get(column) == values[column]:
                    raise CatalogWriteError(f"UNIQUE constraint failed: missions.{column}")

    def insert(self, record: dict) -> dict:
        self.insert_attempts.append(dict(record))
        if self.insert_error:
            raise CatalogWriteError(self.insert_error)
        self._check(record)
        row = dict(record)
        self.rows.append(row)
        return dict(row)

    def update(self, key_column: str, key_value, patch: dict) -> int:
        self.updates.append((key_column, key_value, dict(patch)))
        matches = [row for row in self.rows if row.get(key_column) == key_value]
        for row in matches:
            self._check(patch, ignore=row)
            row.update(patch)
        return len(matches)

    def by_uid(self, mission_uid: str) -> dict:
        return next(row for row in self.rows if row.get("mission_uid") == mission_uid)


@pytest.fixture()
def fake_storage():
    return FakeStorage


@pytest.fixture()
def fake_catalog():
    return FakeCatalog


@pytest.fixture()
def sqlite_backend(tmp_path, monkeypatch):
    for key in [
        "DB_NAME",
        "DB_USER",
        "DB_PASSWORD",
        "DB_HOST",
        "DB_INSTANCE_CONNECTION_NAME",
    ]:
        monkeypatch.delenv(key, raising=False)
    db_path = tmp_path / "database.db"
    monkeypatch.setenv("SQLITE_PATH", str(db_path))
    monkeypatch.setenv("SERVICE_SETTINGS_KEY_FILE", str(tmp_path / ".service_settings_key"))
    monkeypatch.setattr(backend_app, "_SERVICE_SETTINGS_SECRET_CACHE", None)
    backend_app.init_db()
    yield db_path
