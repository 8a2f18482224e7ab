"""Read, edit and delete single mission records."""
from __future__ import annotations

import json
import logging
import re
from typing import Callable, Dict, Mapping, Optional

from .catalog_store import CatalogReadError, CatalogWriteError
from .reconciler import JSON_BUCKET, load_json_document
from .storage_client import StorageConfigurationError, StorageRequestError

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("title", "order_no", "object_path", "assets_prefix")
UNTITLED = "Untitled Mission"

_UID_INVALID = re.compile(r"[^a-zA-Z0-9_-]+")


class MissionRecordError(RuntimeError):
    """Raised when a single-mission request cannot be served."""

    def __init__(self, message: str, status_code: int = 500) -> None:
        super().__init__(message)
        self.status_code = status_code


def sanitize_mission_uid(value: str) -> str:
    return _UID_INVALID.sub("-", (value or "").strip()).strip("-")


def normalize_storage_path(path: str, bucket: str = JSON_BUCKET) -> str:
    """``/missions-json/intro.json`` -> ``intro.json``."""
    cleaned = (path or "").strip().lstrip("/")
    if cleaned.startswith(f"{bucket}/"):
        cleaned = cleaned[len(bucket) + 1:]
    return cleaned


def display_title(record: Mapping[str, object]) -> str:
    title = record.get("title")
    if isinstance(title, str) and title.strip():
        return title
    mission_data = record.get("mission_data")
    if isinstance(mission_data, dict):
        embedded = mission_data.get("title")
        if isinstance(embedded, str) and embedded.strip():
            return embedded
    return UNTITLED


def _fetch(catalog, key_column: str, key_value) -> Optional[Dict[str, object]]:
    try:
        return catalog.fetch(key_column, key_value)
    except CatalogReadError as exc:
        raise MissionRecordError(f"Unable to read missions table: {exc}") from exc


def get_mission(storage_factory: Callable[[], object], catalog, mission_uid: str, bucket: str = JSON_BUCKET) -> dict:
    """Catalog record, with ``mission_data`` loaded from storage when the row has none."""
    if not mission_uid:
        raise MissionRecordError("Mission UID is required.", status_code=400)
    record = _fetch(catalog, "mission_uid", mission_uid)
    if record is None:
        raise MissionRecordError(f"Mission '{mission_uid}' not found.", status_code=404)

    mission_data = record.get("mission_data")
    object_path = record.get("object_path")
    if not mission_data and isinstance(object_path, str) and object_path:
        try:
            content = storage_factory().download(bucket, normalize_storage_path(object_path, bucket))
            mission_data = load_json_document(content)
        except (StorageConfigurationError, StorageRequestError, UnicodeDecodeError, ValueError) as exc:
            logger.info("No stored JSON for mission %s at %s: %s", mission_uid, object_path, exc)
    record["mission_data"] = mission_data
    return record


def _mentions_mission_data(exc: Exception) -> bool:
    return "mission_data" in str(exc)


def update_mission(
    storage_factory: Callable[[], object],
    catalog,
    raw_mission_uid: str,
    payload,
    bucket: str = JSON_BUCKET,
) -> dict:
    """Apply an edit to one mission.

    When the table rejects ``mission_data`` the other fields are written
    alone, the document is uploaded to the JSON bucket instead and the
    record's ``object_path`` points at it.
    """
    if not raw_mission_uid:
        raise MissionRecordError("Mission UID is required.", status_code=400)
    if not isinstance(payload, dict):
        raise MissionRecordError("The request body must be a JSON object.", status_code=400)
    mission_uid = sanitize_mission_uid(raw_mission_uid)
    existing = _fetch(catalog, "mission_uid", mission_uid)
    if existing is None:
        raise MissionRecordError(
            f"Mission '{mission_uid}' not found. Upload it before editing.", status_code=404
        )

    patch = {key: payload[key] for key in EDITABLE_FIELDS if key in payload}
    mission_data = payload.get("mission_data")
    if mission_data is None:
        mission_data = existing.get("mission_data")
    values = dict(patch)
    if mission_data is not None:
        values["mission_data"] = mission_data

    try:
        if values:
            catalog.update("mission_uid", mission_uid, values)
    except CatalogWriteError as exc:
        if "mission_data" not in values or not _mentions_mission_data(exc):
            raise MissionRecordError(str(exc) or "Failed to update mission.") from exc
        logger.info("Storing mission %s JSON in storage: %s", mission_uid, exc)
        _store_in_bucket(storage_factory, catalog, mission_uid, patch, mission_data, existing, payload, bucket)

    return {"success": True, "mission": _fetch(catalog, "mission_uid", mission_uid) or existing}


def _store_in_bucket(storage_factory, catalog, mission_uid, patch, mission_data, existing, payload, bucket) -> None:
    requested_path = payload.get("object_path")
    if not isinstance(requested_path, str) or not requested_path.strip():
        requested_path = existing.get("object_path") or f"{mission_uid}.json"
    storage_path = normalize_storage_path(str(requested_path), bucket)
    content = json.dumps(mission_data, ensure_ascii=False, indent=2).encode("utf-8")
    try:
        if patch:
            catalog.update("mission_uid", mission_uid, patch)
        storage_factory().upload(bucket, storage_path, content, upsert=True)
        catalog.update("mission_uid", mission_uid, {"object_path": storage_path})
    except (CatalogWriteError, StorageConfigurationError, StorageRequestError) as exc:
        raise MissionRecordError(str(exc) or "Failed to update mission.") from exc


def delete_mission(storage_factory: Callable[[], object], catalog, body, bucket: str = JSON_BUCKET) -> dict:
    """Delete a record by ``id`` or ``mission_uid`` and remove its JSON file."""
    body = body if isinstance(body, dict) else {}
    mission_id = body.get("id")
    mission_uid = body.get("mission_uid")
    if not mission_id and not mission_uid:
        raise MissionRecordError("Provide id or mission_uid to delete", status_code=400)

    if mission_id:
        record = _fetch(catalog, "id", mission_id)
    else:
        record = _fetch(catalog, "mission_uid", mission_uid)
    if record is None:
        raise MissionRecordError("Mission not found.", status_code=404)

    object_path = record.get("object_path")
    if isinstance(object_path, str) and object_path:
        try:
            storage_factory().remove(bucket, [normalize_storage_path(object_path, bucket)])
        except (StorageConfigurationError, StorageRequestError) as exc:
            logger.warning("Failed to remove %s for deleted mission: %s", object_path, exc)

    if record.get("id") is not None:
        key_column, key_value = "id", record["id"]
    elif record.get("mission_uid"):
        key_column, key_value = "mission_uid", record["mission_uid"]
    else:
        raise MissionRecordError("Mission record missing identifiable key", status_code=400)
    try:
        catalog.delete(key_column, key_value)
    except CatalogWriteError as exc:
        raise MissionRecordError(str(exc) or "Failed to delete mission") from exc
    return {"success": True}
