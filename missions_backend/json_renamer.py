"""Rename mission JSON files in storage after their ``mission_uid``."""
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from .catalog_store import CatalogReadError, CatalogWriteError
from .reconciler import JSON_BUCKET
from .storage_client import StorageConfigurationError, StorageRequestError

logger = logging.getLogger(__name__)


class RenameError(RuntimeError):
    """Raised when the rename job cannot start at all."""

    def __init__(self, message: str, status_code: int = 500) -> None:
        super().__init__(message)
        self.status_code = status_code


def _directory_of(path: str) -> str:
    return path[: path.rfind("/") + 1]


def _candidate_paths(mission: Dict[str, object]) -> List[str]:
    candidates: List[str] = []
    provided = mission.get("object_path")
    if isinstance(provided, str) and provided:
        candidates.append(provided)
    order_no = mission.get("order_no")
    mission_uid = mission.get("mission_uid")
    candidates.extend(
        [
            f"{order_no}.json",
            f"missions/{order_no}.json",
            f"{mission_uid}.json",
            f"missions/{mission_uid}.json",
        ]
    )
    unique: List[str] = []
    for candidate in candidates:
        if candidate not in unique:
            unique.append(candidate)
    return unique


def _locate(storage, bucket: str, candidates: List[str]) -> Tuple[Optional[str], Optional[bytes]]:
    for candidate in candidates:
        try:
            return candidate, storage.download(bucket, candidate)
        except (StorageRequestError, StorageConfigurationError):
            continue
    return None, None


def target_path(mission: Dict[str, object], found_path: str) -> str:
    provided = mission.get("object_path")
    if isinstance(provided, str) and "/" in provided:
        directory = _directory_of(provided)
    elif found_path.startswith("missions/"):
        directory = "missions/"
    else:
        directory = ""
    return f"{directory}{mission['mission_uid']}.json"


def rename_mission_json_files(storage, catalog, bucket: str = JSON_BUCKET) -> dict:
    try:
        missions = catalog.list_missions()
    except CatalogReadError as exc:
        raise RenameError(f"Failed to fetch missions: {exc}") from exc
    if not missions:
        raise RenameError("No missions found in database", status_code=404)
    try:
        buckets = storage.list_buckets()
    except (StorageRequestError, StorageConfigurationError) as exc:
        raise RenameError(f"Unable to list storage buckets: {exc}") from exc
    if bucket not in buckets:
        raise RenameError(f"Storage bucket '{bucket}' not found", status_code=404)

    renamed: List[str] = []
    errors: List[str] = []
    for mission in missions:
        mission_uid = mission.get("mission_uid")
        if not mission_uid:
            errors.append(f"Mission {mission.get('order_no')} ({mission.get('title')}) has no mission_uid")
            continue
        found_path, content = _locate(storage, bucket, _candidate_paths(mission))
        if found_path is None or content is None:
            errors.append(
                f"Could not locate JSON for mission {mission.get('order_no')} ({mission_uid})"
            )
            continue
        new_path = target_path(mission, found_path)
        if found_path == new_path:
            continue
        try:
            storage.upload(bucket, new_path, content, upsert=True)
        except (StorageRequestError, StorageConfigurationError) as exc:
            errors.append(f"Failed to upload {new_path}: {exc}")
            continue
        try:
            storage.remove(bucket, [found_path])
        except StorageRequestError as exc:
            logger.warning("Failed to delete old file %s: %s", found_path, exc)
        try:
            catalog.update("mission_uid", mission_uid, {"object_path": new_path})
        except CatalogWriteError as exc:
            logger.warning("Failed to update object_path for %s: %s", mission_uid, exc)
        renamed.append(f"{found_path} → {new_path}")

    return {
        "success": True,
        "message": f"Renamed {len(renamed)} files",
        "renamedFiles": renamed,
        "errors": errors,
        "totalMissions": len(missions),
        "renamedCount": len(renamed),
        "errorCount": len(errors),
    }
