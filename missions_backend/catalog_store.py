"""SQL access to the ``missions`` catalog table."""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Mapping, Optional

logger = logging.getLogger(__name__)

MISSIONS_TABLE = "missions"

CATALOG_COLUMNS = (
    "mission_uid",
    "order_no",
    "object_path",
    "title",
    "assets_bucket",
    "assets_prefix",
    "unlock_playground",
    "unlocks_projects",
    "mission_data",
    "updated_at",
)

SNAPSHOT_COLUMNS = (
    "mission_uid",
    "order_no",
    "object_path",
    "title",
    "assets_bucket",
    "assets_prefix",
    "unlock_playground",
    "unlocks_projects",
)

_BOOLEAN_COLUMNS = {"unlock_playground", "unlocks_projects"}


class CatalogReadError(RuntimeError):
    """Raised when the missions table cannot be read."""


class CatalogWriteError(RuntimeError):
    """Raised when an insert or update against the missions table fails."""


def _coerce_db_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8", errors="ignore")
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "t", "yes", "y", "on"}
    return bool(value)


def _format_timestamp(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S")


KEY_COLUMNS = ("id", "mission_uid", "order_no", "object_path")

RECORD_COLUMNS = ("id",) + CATALOG_COLUMNS


def _validate_columns(columns: Iterable[str], allowed: Iterable[str] = CATALOG_COLUMNS) -> List[str]:
    allowed = tuple(allowed)
    validated: List[str] = []
    for column in columns:
        if column not in allowed:
            raise ValueError(f"Unknown missions column: {column!r}")
        validated.append(column)
    return validated


def _to_db_value(column: str, value):
    if column == "mission_data":
        if value is None:
            return None
        return json.dumps(value, ensure_ascii=False)
    if column in _BOOLEAN_COLUMNS:
        return 1 if value else 0
    return value


def serialize_catalog_row(row: Mapping[str, object]) -> Dict[str, object]:
    record: Dict[str, object] = {}
    for key, value in dict(row).items():
        if isinstance(value, (bytes, bytearray)):
            value = value.decode("utf-8", errors="ignore")
        if key in _BOOLEAN_COLUMNS:
            value = _coerce_db_bool(value)
        elif key == "order_no" and value is not None:
            try:
                value = int(value)
            except (TypeError, ValueError):
                value = None
        elif key == "mission_data" and isinstance(value, str):
            try:
                value = json.loads(value) if value.strip() else None
            except json.JSONDecodeError as exc:
                logger.error(
                    "Failed to decode mission_data for %s: %s",
                    record.get("mission_uid") or row.get("mission_uid") or "<no-uid>",
                    exc,
                )
                value = None
        elif key == "updated_at" and isinstance(value, datetime):
            value = value.isoformat()
        record[key] = value
    return record


class MissionCatalog:
    """Reads and writes mission rows through a DB-API connection factory.

    ``connection_factory`` must return a context manager exposing ``cursor()``
    the way ``app.get_db_connection`` does, with ``%s`` placeholders.
    """

    def __init__(self, connection_factory: Callable[[], object], table: str = MISSIONS_TABLE) -> None:
        self._connect = connection_factory
        self.table = table

    def select_all(self, columns: Iterable[str] = SNAPSHOT_COLUMNS) -> List[Dict[str, object]]:
        selected = _validate_columns(columns)
        query = f"SELECT {', '.join(selected)} FROM {self.table}"
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(query)
                    rows = cur.fetchall()
        except Exception as exc:
            raise CatalogReadError(str(exc)) from exc
        return [serialize_catalog_row(row) for row in rows]

    def list_missions(self) -> List[Dict[str, object]]:
        missions = self.select_all(CATALOG_COLUMNS)
        missions.sort(
            key=lambda item: (item.get("order_no") is None, item.get("order_no") or 0)
        )
        return missions

    def insert(self, record: Mapping[str, object]) -> Dict[str, object]:
        values = dict(record)
        values["updated_at"] = _format_timestamp(datetime.utcnow())
        columns = _validate_columns(values.keys())
        placeholders = ", ".join(["%s"] * len(columns))
        params = [_to_db_value(column, values[column]) for column in columns]
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"INSERT INTO {self.table} ({', '.join(columns)}) VALUES ({placeholders})",
                        params,
                    )
                    stored = self._fetch_one(cur, values.get("mission_uid"))
        except Exception as exc:
            raise CatalogWriteError(str(exc)) from exc
        if stored is None:
            return serialize_catalog_row(values)
        return stored

    def update(self, key_column: str, key_value, patch: Mapping[str, object]) -> int:
        (key,) = _validate_columns([key_column], KEY_COLUMNS)
        values = dict(patch)
        values["updated_at"] = _format_timestamp(datetime.utcnow())
        columns = _validate_columns(values.keys())
        assignments = ", ".join(f"{column} = %s" for column in columns)
        params = [_to_db_value(column, values[column]) for column in columns]
        params.append(key_value)
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"UPDATE {self.table} SET {assignments} WHERE {key} = %s",
                        params,
                    )
                    affected = cur.rowcount
        except Exception as exc:
            raise CatalogWriteError(str(exc)) from exc
        if affected == 0:
            logger.warning("Update on %s matched no rows for %s=%r", self.table, key, key_value)
        return affected

    def fetch(self, key_column: str, key_value) -> Optional[Dict[str, object]]:
        """Full record (including ``id``) for one key, or ``None``."""
        (key,) = _validate_columns([key_column], KEY_COLUMNS)
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"SELECT * FROM {self.table} WHERE {key} = %s",
                        (key_value,),
                    )
                    row = cur.fetchone()
        except Exception as exc:
            raise CatalogReadError(str(exc)) from exc
        if not row:
            return None
        return serialize_catalog_row({k: v for k, v in dict(row).items() if k in RECORD_COLUMNS})

    def delete(self, key_column: str, key_value) -> int:
        (key,) = _validate_columns([key_column], KEY_COLUMNS)
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(f"DELETE FROM {self.table} WHERE {key} = %s", (key_value,))
                    affected = cur.rowcount
        except Exception as exc:
            raise CatalogWriteError(str(exc)) from exc
        logger.info("Deleted %d row(s) from %s where %s=%r", affected, self.table, key, key_value)
        return affected

    def _fetch_one(self, cur, mission_uid) -> Optional[Dict[str, object]]:
        if not mission_uid:
            return None
        cur.execute(
            f"SELECT {', '.join(SNAPSHOT_COLUMNS)} FROM {self.table} WHERE mission_uid = %s",
            (mission_uid,),
        )
        row = cur.fetchone()
        return serialize_catalog_row(row) if row else None
