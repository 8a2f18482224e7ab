"""Reconcile mission JSON files in storage against the missions catalog.

A run lists every ``.json`` object of the missions bucket, loads the current
catalog snapshot and then walks the files one at a time.  Each file is matched
against an existing row (by object path, then mission uid, then order number)
and either updates that row or inserts a new one.  The in-memory indices are
updated after every write so that later files in the same run see the uids and
order numbers allocated for earlier ones.
"""
from __future__ import annotations

import json
import logging
import math
import re
import time
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set

from .catalog_store import CatalogReadError, CatalogWriteError
from .storage_client import StorageConfigurationError, StorageRequestError

logger = logging.getLogger(__name__)

JSON_BUCKET = "missions-json"
ASSETS_BUCKET = "missions-assets"

ORDER_FIELDS = ("order", "order_no", "orderNo", "index")
IDENTITY_FIELDS = ("mission_uid", "missionUid", "uid")

OUTCOME_INSERTED = "inserted"
OUTCOME_UPDATED = "updated"
OUTCOME_SKIPPED = "skipped"

ERROR_STORAGE_UNAVAILABLE = "storage_unavailable"
ERROR_BUCKET_NOT_FOUND = "bucket_not_found"
ERROR_LISTING_FAILED = "listing_failed"
ERROR_CATALOG_UNAVAILABLE = "catalog_unavailable"

_SLUG_SEPARATORS = re.compile(r"[^a-z0-9]+")


def slugify(value: str) -> str:
    slug = _SLUG_SEPARATORS.sub("-", (value or "").strip().lower()).strip("-")
    return slug or f"mission-{int(time.time() * 1000)}"


def unique_value(base: str, exists: Callable[[str], bool]) -> str:
    if not exists(base):
        return base
    counter = 1
    candidate = f"{base}-{counter}"
    while exists(candidate):
        counter += 1
        candidate = f"{base}-{counter}"
    return candidate


def assets_prefix_for(mission_uid: str) -> Optional[str]:
    """``intro-to-loops`` -> ``MINTRO-TO-LOOPS/``; ``m3`` -> ``M3/``."""
    upper = (mission_uid or "").strip().upper()
    if not upper:
        return None
    body = upper if upper.startswith("M") else f"M{upper}"
    return f"{body}/"


def parse_number(value) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            return None
    elif isinstance(value, str):
        cleaned = value.strip()
        if not cleaned:
            return None
        try:
            number = float(cleaned)
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    return int(number) if number.is_integer() else number


def file_stem(path: str) -> str:
    name = PurePosixPath(path).name
    if name.lower().endswith(".json"):
        return name[: -len(".json")]
    return name


def _reject_constant(name: str):
    raise ValueError(f"Unexpected token {name}")


def load_json_document(content: bytes):
    """Strict JSON: a leading BOM is ignored, ``NaN`` and ``Infinity`` are errors."""
    return json.loads(content.decode("utf-8-sig"), parse_constant=_reject_constant)


def _first_text(values: Iterable[object]) -> Optional[str]:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


@dataclass
class MissionPayload:
    """Tolerant view over a downloaded mission document."""

    path: str
    document: object
    order_candidates: List[float] = field(default_factory=list)
    title: str = ""
    raw_identity: str = ""
    slug: str = ""

    @classmethod
    def parse(cls, path: str, document: object) -> "MissionPayload":
        fields: Mapping[str, object] = document if isinstance(document, dict) else {}
        stem = file_stem(path)
        candidates = [parse_number(fields.get(name)) for name in ORDER_FIELDS]
        candidates.append(parse_number(stem))
        title = _first_text([fields.get("title")]) or stem
        raw_identity = _first_text(fields.get(name) for name in IDENTITY_FIELDS) or title
        return cls(
            path=path,
            document=document,
            order_candidates=[value for value in candidates if value is not None],
            title=title,
            raw_identity=raw_identity,
            slug=slugify(raw_identity),
        )

    @property
    def primary_order(self) -> Optional[float]:
        return self.order_candidates[0] if self.order_candidates else None


@dataclass(eq=False)
class CatalogEntry:
    """In-memory copy of a catalog row; compared and hashed by identity."""

    mission_uid: Optional[str] = None
    order_no: Optional[int] = None
    object_path: Optional[str] = None
    title: Optional[str] = None
    assets_bucket: Optional[str] = None
    assets_prefix: Optional[str] = None
    unlock_playground: bool = False
    unlocks_projects: bool = False

    @classmethod
    def from_row(cls, row: Mapping[str, object]) -> "CatalogEntry":
        order_value = parse_number(row.get("order_no"))
        return cls(
            mission_uid=(row.get("mission_uid") or None),  # type: ignore[arg-type]
            order_no=order_value if isinstance(order_value, int) else None,
            object_path=(row.get("object_path") or None),  # type: ignore[arg-type]
            title=row.get("title"),  # type: ignore[arg-type]
            assets_bucket=(row.get("assets_bucket") or None),  # type: ignore[arg-type]
            assets_prefix=(row.get("assets_prefix") or None),  # type: ignore[arg-type]
            unlock_playground=bool(row.get("unlock_playground")),
            unlocks_projects=bool(row.get("unlocks_projects")),
        )


@dataclass
class ReconciliationState:
    by_uid: Dict[str, CatalogEntry] = field(default_factory=dict)
    by_order: Dict[int, CatalogEntry] = field(default_factory=dict)
    by_path: Dict[str, CatalogEntry] = field(default_factory=dict)
    used_orders: Set[int] = field(default_factory=set)
    claims: Dict[CatalogEntry, str] = field(default_factory=dict)

    @classmethod
    def from_rows(cls, rows: Iterable[Mapping[str, object]]) -> "ReconciliationState":
        state = cls()
        for row in rows:
            state.add(CatalogEntry.from_row(row))
        return state

    def add(self, entry: CatalogEntry) -> None:
        if entry.mission_uid:
            self.by_uid[entry.mission_uid] = entry
        if entry.order_no is not None:
            self.by_order[entry.order_no] = entry
            self.used_orders.add(entry.order_no)
        if entry.object_path:
            self.by_path[entry.object_path] = entry

    def claim_owned_paths(self, paths: Iterable[str]) -> None:
        """Reserve each record whose ``object_path`` is one of ``paths`` for that path."""
        for path in paths:
            entry = self.by_path.get(path)
            if entry is not None:
                self.claims[entry] = path

    def _available(self, entry: Optional[CatalogEntry], path: str) -> Optional[CatalogEntry]:
        if entry is None:
            return None
        claimed_by = self.claims.get(entry)
        if claimed_by is not None and claimed_by != path:
            return None
        return entry

    def match(self, payload: MissionPayload) -> Optional[CatalogEntry]:
        existing = self.by_path.get(payload.path)
        if existing is not None:
            return existing
        existing = self._available(self.by_uid.get(payload.slug), payload.path)
        if existing is not None:
            return existing
        primary = payload.primary_order
        if primary is None:
            return None
        return self._available(self.by_order.get(primary), payload.path)  # type: ignore[arg-type]

    def allocate_order(self, primary: Optional[float]) -> int:
        if primary is not None:
            candidate = math.ceil(primary)
            while candidate in self.used_orders:
                candidate += 1
        else:
            candidate = max(self.used_orders) + 1 if self.used_orders else 1
        self.used_orders.add(candidate)
        return candidate

    def allocate_uid(self, slug: str) -> str:
        return unique_value(slug, lambda candidate: candidate in self.by_uid)

    def move_path(self, entry: CatalogEntry, path: str) -> None:
        if entry.object_path and self.by_path.get(entry.object_path) is entry:
            del self.by_path[entry.object_path]
        entry.object_path = path
        self.by_path[path] = entry


@dataclass(frozen=True)
class FileOutcome:
    path: str
    status: str
    reason: str = ""
    degraded: bool = False

    @classmethod
    def skipped(cls, path: str, reason: str) -> "FileOutcome":
        return cls(path=path, status=OUTCOME_SKIPPED, reason=reason)


@dataclass
class SyncSummary:
    files_scanned: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    @classmethod
    def from_outcomes(cls, outcomes: Iterable[FileOutcome]) -> "SyncSummary":
        summary = cls()
        for outcome in outcomes:
            summary.files_scanned += 1
            if outcome.status == OUTCOME_INSERTED:
                summary.inserted += 1
            elif outcome.status == OUTCOME_UPDATED:
                summary.updated += 1
            else:
                summary.skipped += 1
                summary.errors.append({"path": outcome.path, "reason": outcome.reason})
        return summary

    def to_dict(self) -> dict:
        return {
            "filesScanned": self.files_scanned,
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": [dict(error) for error in self.errors],
        }


@dataclass
class SyncResult:
    success: bool
    message: str
    summary: SyncSummary = field(default_factory=SyncSummary)
    error_code: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "summary": self.summary.to_dict(),
        }


def discover_json_files(storage, bucket: str, prefix: str = "") -> List[str]:
    paths: List[str] = []
    for entry in storage.list(bucket, prefix):
        if not entry.name:
            continue
        current = f"{prefix}/{entry.name}" if prefix else entry.name
        if entry.is_folder:
            paths.extend(discover_json_files(storage, bucket, current))
        elif entry.name.lower().endswith(".json"):
            paths.append(current)
    return paths


def _write_with_fallback(write: Callable[[dict], object], values: dict):
    """Write ``values``; on failure retry once without the embedded payload.

    Returns ``(result, degraded)``.  Raises the second ``CatalogWriteError``
    when the minimal write fails too.
    """
    try:
        return write(values), False
    except CatalogWriteError as exc:
        if "mission_data" not in values:
            raise
        logger.debug("Retrying write without mission_data after error: %s", exc)
    minimal = {key: value for key, value in values.items() if key != "mission_data"}
    return write(minimal), True


class MissionReconciler:
    """Applies one reconciliation run against a storage bucket and a catalog."""

    def __init__(
        self,
        storage,
        catalog,
        *,
        bucket: str = JSON_BUCKET,
        assets_bucket: str = ASSETS_BUCKET,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.storage = storage
        self.catalog = catalog
        self.bucket = bucket
        self.assets_bucket = assets_bucket
        self._clock = clock

    def run(self, deadline: Optional[float] = None) -> SyncResult:
        try:
            buckets = self.storage.list_buckets()
        except (StorageRequestError, StorageConfigurationError) as exc:
            logger.error("Unable to list storage buckets: %s", exc)
            return SyncResult(
                False, f"Unable to list storage buckets: {exc}", error_code=ERROR_STORAGE_UNAVAILABLE
            )
        if self.bucket not in buckets:
            return SyncResult(
                False, f"Storage bucket '{self.bucket}' not found.", error_code=ERROR_BUCKET_NOT_FOUND
            )

        try:
            paths = discover_json_files(self.storage, self.bucket)
        except (StorageRequestError, StorageConfigurationError) as exc:
            logger.error("Unable to list mission JSON files in %s: %s", self.bucket, exc)
            return SyncResult(
                False, f"Unable to list mission JSON files: {exc}", error_code=ERROR_LISTING_FAILED
            )
        if not paths:
            return SyncResult(True, "No mission JSON files found in storage bucket.")

        try:
            rows = self.catalog.select_all()
        except CatalogReadError as exc:
            logger.error("Unable to read missions table: %s", exc)
            return SyncResult(
                False, f"Unable to read missions table: {exc}", error_code=ERROR_CATALOG_UNAVAILABLE
            )

        state = ReconciliationState.from_rows(rows)
        state.claim_owned_paths(paths)
        logger.info(
            "Reconciling %d mission files from %s against %d catalog rows",
            len(paths),
            self.bucket,
            len(rows),
        )
        outcomes: List[FileOutcome] = []
        for path in paths:
            if deadline is not None and self._clock() >= deadline:
                logger.warning(
                    "Sync deadline reached after %d of %d files", len(outcomes), len(paths)
                )
                break
            outcome = self._process_path(state, path)
            if outcome.status == OUTCOME_SKIPPED:
                logger.warning("Skipped %s: %s", path, outcome.reason)
            elif outcome.degraded:
                logger.warning("Stored %s without mission_data after a failed write", path)
            outcomes.append(outcome)

        summary = SyncSummary.from_outcomes(outcomes)
        logger.info(
            "Mission sync finished: %d scanned, %d inserted, %d updated, %d skipped",
            summary.files_scanned,
            summary.inserted,
            summary.updated,
            summary.skipped,
        )
        if len(outcomes) < len(paths):
            message = f"Sync stopped at deadline after {len(outcomes)} of {len(paths)} files."
        else:
            message = "Sync completed."
        return SyncResult(True, message, summary)

    def _process_path(self, state: ReconciliationState, path: str) -> FileOutcome:
        try:
            payload = self._load_payload(path)
            if isinstance(payload, FileOutcome):
                return payload
            existing = state.match(payload)
            if existing is not None:
                return self._apply_update(state, existing, payload)
            return self._apply_insert(state, payload)
        except Exception as exc:
            logger.exception("Unexpected error while syncing %s", path)
            return FileOutcome.skipped(path, str(exc) or "Unexpected error during sync")

    def _load_payload(self, path: str):
        try:
            content = self.storage.download(self.bucket, path)
        except (StorageRequestError, StorageConfigurationError) as exc:
            return FileOutcome.skipped(path, str(exc) or "Unable to download file")
        try:
            document = load_json_document(content or b"")
        except (UnicodeDecodeError, ValueError) as exc:
            return FileOutcome.skipped(path, f"Invalid JSON format: {exc}")
        return MissionPayload.parse(path, document)

    def _apply_update(
        self, state: ReconciliationState, existing: CatalogEntry, payload: MissionPayload
    ) -> FileOutcome:
        path = payload.path
        patch: Dict[str, object] = {"mission_data": payload.document}
        effective_uid = existing.mission_uid
        if not effective_uid:
            effective_uid = state.allocate_uid(payload.slug)
            patch["mission_uid"] = effective_uid
        if existing.object_path != path:
            patch["object_path"] = path
        if not existing.assets_bucket:
            patch["assets_bucket"] = self.assets_bucket
        desired_prefix = assets_prefix_for(effective_uid)
        if desired_prefix and existing.assets_prefix != desired_prefix:
            patch["assets_prefix"] = desired_prefix
        patch["unlock_playground"] = True
        patch["unlocks_projects"] = True
        if payload.title and payload.title != existing.title:
            patch["title"] = payload.title

        if existing.mission_uid:
            key_column, key_value = "mission_uid", existing.mission_uid
        elif existing.order_no is not None:
            key_column, key_value = "order_no", existing.order_no
        elif existing.object_path:
            key_column, key_value = "object_path", existing.object_path
        else:
            return FileOutcome.skipped(
                path, "Unable to determine identifier for existing mission row."
            )

        try:
            _, degraded = _write_with_fallback(
                lambda values: self.catalog.update(key_column, key_value, values), patch
            )
        except CatalogWriteError as exc:
            label = existing.mission_uid or existing.object_path or "unknown"
            return FileOutcome.skipped(path, f"Failed to update mission '{label}': {exc}")

        if not existing.mission_uid:
            existing.mission_uid = effective_uid
            state.by_uid[effective_uid] = existing
        if existing.object_path != path:
            state.move_path(existing, path)
        existing.assets_bucket = existing.assets_bucket or self.assets_bucket
        if desired_prefix:
            existing.assets_prefix = desired_prefix
        existing.unlock_playground = True
        existing.unlocks_projects = True
        existing.title = payload.title or existing.title
        state.claims[existing] = path
        return FileOutcome(path=path, status=OUTCOME_UPDATED, degraded=degraded)

    def _apply_insert(self, state: ReconciliationState, payload: MissionPayload) -> FileOutcome:
        path = payload.path
        order_no = state.allocate_order(payload.primary_order)
        mission_uid = state.allocate_uid(payload.slug)
        record: Dict[str, object] = {
            "title": payload.title,
            "mission_uid": mission_uid,
            "order_no": order_no,
            "object_path": path,
            "assets_bucket": self.assets_bucket,
            "assets_prefix": assets_prefix_for(mission_uid),
            "unlock_playground": True,
            "unlocks_projects": True,
            "mission_data": payload.document,
        }
        try:
            stored, degraded = _write_with_fallback(self.catalog.insert, record)
        except CatalogWriteError as exc:
            return FileOutcome.skipped(path, f"Database insert failed: {exc}")

        values = dict(record)
        if isinstance(stored, Mapping):
            values.update({key: value for key, value in stored.items() if value is not None})
        entry = CatalogEntry.from_row(values)
        state.add(entry)
        state.claims[entry] = path
        return FileOutcome(path=path, status=OUTCOME_INSERTED, degraded=degraded)


def run_reconciliation(
    storage,
    catalog,
    *,
    bucket: str = JSON_BUCKET,
    assets_bucket: str = ASSETS_BUCKET,
    deadline: Optional[float] = None,
) -> SyncResult:
    reconciler = MissionReconciler(storage, catalog, bucket=bucket, assets_bucket=assets_bucket)
    return reconciler.run(deadline=deadline)
