from __future__ import annotations

import sqlite3

import pytest

from missions_backend import app as backend_app
from missions_backend.catalog_store import (
    CatalogReadError,
    CatalogWriteError,
    MissionCatalog,
)
from missions_backend.reconciler import run_reconciliation


def _catalog() -> MissionCatalog:
    return MissionCatalog(backend_app.get_db_connection)


def test_insert_select_and_update_roundtrip(sqlite_backend):
    catalog = _catalog()
    stored = catalog.insert(
        {
            "mission_uid": "loops",
            "order_no": 7,
            "object_path": "7.json",
            "title": "Loops",
            "assets_bucket": "missions-assets",
            "assets_prefix": "MLOOPS/",
            "unlock_playground": True,
            "unlocks_projects": True,
            "mission_data": {"title": "Loops", "steps": ["á", 2]},
        }
    )
    assert stored["mission_uid"] == "loops"
    assert stored["unlock_playground"] is True

    affected = catalog.update("mission_uid", "loops", {"title": "Loops 2", "unlocks_projects": False})
    assert affected == 1

    missions = catalog.list_missions()
    assert len(missions) == 1
    mission = missions[0]
    assert mission["title"] == "Loops 2"
    assert mission["order_no"] == 7
    assert mission["unlocks_projects"] is False
    assert mission["mission_data"] == {"title": "Loops", "steps": ["á", 2]}
    assert mission["updated_at"]


def test_unique_columns_raise_write_errors(sqlite_backend):
    catalog = _catalog()
    catalog.insert({"mission_uid": "a", "order_no": 1})
    with pytest.raises(CatalogWriteError):
        catalog.insert({"mission_uid": "a", "order_no": 2})
    with pytest.raises(CatalogWriteError):
        catalog.insert({"mission_uid": "b", "order_no": 1})


def test_unknown_columns_are_rejected(sqlite_backend):
    with pytest.raises(ValueError):
        _catalog().update("mission_uid; DROP TABLE missions", "x", {"title": "y"})


def test_list_missions_orders_by_order_no(sqlite_backend):
    catalog = _catalog()
    catalog.insert({"mission_uid": "c", "order_no": 3})
    catalog.insert({"mission_uid": "a", "order_no": 1})
    catalog.insert({"mission_uid": "b", "order_no": 2})
    assert [row["mission_uid"] for row in catalog.list_missions()] == ["a", "b", "c"]


def test_missing_table_raises_read_error(tmp_path):
    def connect():
        connection = sqlite3.connect(str(tmp_path / "empty.db"))
        connection.row_factory = sqlite3.Row
        return backend_app.SQLiteConnectionWrapper(connection)

    with pytest.raises(CatalogReadError):
        MissionCatalog(connect).select_all()


def test_sync_against_sqlite_catalog(sqlite_backend, fake_storage):
    storage = fake_storage(
        {
            "7.json": {"title": "Loops"},
            "a.json": {"title": "Intro", "order_no": 3},
            "b.json": {"title": "Intro", "order_no": 3},
        }
    )
    catalog = _catalog()

    first = run_reconciliation(storage, catalog)
    second = run_reconciliation(storage, catalog)

    assert first.summary.inserted == 3
    assert second.summary.inserted == 0
    assert second.summary.updated == 3
    rows = {row["mission_uid"]: row for row in catalog.list_missions()}
    assert rows["loops"]["order_no"] == 7
    assert rows["loops"]["assets_prefix"] == "MLOOPS/"
    assert rows["intro"]["order_no"] == 3
    assert rows["intro-1"]["order_no"] == 4
    assert rows["intro-1"]["mission_data"] == {"title": "Intro", "order_no": 3}


def test_sync_degrades_when_table_has_no_mission_data_column(tmp_path, fake_storage):
    db_path = tmp_path / "legacy.db"
    with sqlite3.connect(str(db_path)) as connection:
        connection.execute(
            """
            CREATE TABLE missions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                mission_uid TEXT UNIQUE,
                order_no INTEGER UNIQUE,
                object_path TEXT,
                title TEXT,
                assets_bucket TEXT,
                assets_prefix TEXT,
                unlock_playground INTEGER DEFAULT 0,
                unlocks_projects INTEGER DEFAULT 0,
                updated_at TEXT
            )
            """
        )

    def connect():
        connection = sqlite3.connect(str(db_path))
        connection.row_factory = sqlite3.Row
        return backend_app.SQLiteConnectionWrapper(connection)

    catalog = MissionCatalog(connect)
    storage = fake_storage({"7.json": {"title": "Loops"}})

    first = run_reconciliation(storage, catalog)
    second = run_reconciliation(storage, catalog)

    assert first.summary.inserted == 1
    assert first.summary.skipped == 0
    assert second.summary.updated == 1
    rows = catalog.select_all()
    assert rows == [
        {
            "mission_uid": "loops",
            "order_no": 7,
            "object_path": "7.json",
            "title": "Loops",
            "assets_bucket": "missions-assets",
            "assets_prefix": "MLOOPS/",
            "unlock_playground": True,
            "unlocks_projects": True,
        }
    ]
