"""Helpers to list, read and write mission JSON files in Supabase Storage."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional
from urllib.parse import quote

import requests

DEFAULT_TIMEOUT = 10.0
LIST_PAGE_SIZE = 1000


class StorageConfigurationError(RuntimeError):
    """Raised when the storage integration is misconfigured."""


class StorageRequestError(RuntimeError):
    """Raised when a request to the storage API fails unexpectedly."""

    def __init__(
        self,
        message: str,
        *,
        bucket: str | None = None,
        path: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.bucket = bucket
        self.path = path
        self.status_code = status_code


class StorageObjectNotFoundError(StorageRequestError):
    """Raised when an object does not exist in the bucket."""


@dataclass(frozen=True)
class StorageEntry:
    name: str
    id: Optional[str] = None
    updated_at: Optional[str] = None
    size: Optional[int] = None

    @property
    def is_folder(self) -> bool:
        # Folders come back from the listing API without any object metadata.
        return not self.id and not self.updated_at and not self.size

    @classmethod
    def from_api(cls, item: dict) -> "StorageEntry":
        metadata = item.get("metadata")
        size = None
        if isinstance(metadata, dict):
            raw_size = metadata.get("size")
            try:
                size = int(raw_size) if raw_size is not None else None
            except (TypeError, ValueError):
                size = None
        return cls(
            name=str(item.get("name") or ""),
            id=item.get("id") or None,
            updated_at=item.get("updated_at") or None,
            size=size,
        )


def _clean_path(path: str | None) -> str:
    return (path or "").strip().strip("/")


def _error_details(response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or ""
    if isinstance(payload, dict):
        return str(payload.get("message") or payload.get("error") or response.text or "")
    return response.text or ""


class StorageClient:
    """Thin wrapper around the Supabase Storage REST API."""

    def __init__(self, url: str, service_key: str, timeout: float = DEFAULT_TIMEOUT) -> None:
        if not url:
            raise StorageConfigurationError(
                "Configure the storage integration from the admin panel or set SUPABASE_URL."
            )
        if not service_key:
            raise StorageConfigurationError(
                "Configure the storage integration from the admin panel or set SUPABASE_SERVICE_ROLE_KEY."
            )
        self.base_url = f"{url.rstrip('/')}/storage/v1"
        self.timeout = timeout
        self._session = requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {service_key}",
                "apikey": service_key,
                "User-Agent": os.environ.get("STORAGE_USER_AGENT", "MissionsBackend/1.0"),
            }
        )

    @classmethod
    def from_settings(cls) -> "StorageClient":
        try:
            from . import app as app_module  # type: ignore
        except ImportError:  # pragma: no cover - fallback for direct execution
            import app as app_module  # type: ignore

        settings = app_module.load_service_settings(
            ["supabase_url", "supabase_service_key", "supabase_timeout"]
        )
        url = settings.get("supabase_url") or os.environ.get("SUPABASE_URL") or ""
        service_key = (
            settings.get("supabase_service_key")
            or os.environ.get("SUPABASE_SERVICE_ROLE_KEY")
            or ""
        )
        timeout_value = (
            settings.get("supabase_timeout")
            or os.environ.get("SUPABASE_TIMEOUT")
            or "10"
        )
        try:
            timeout = float(timeout_value)
        except (TypeError, ValueError):
            timeout = DEFAULT_TIMEOUT
        return cls(url=url, service_key=service_key, timeout=timeout)

    def _request(
        self,
        method: str,
        url: str,
        *,
        action: str,
        bucket: str | None = None,
        path: str | None = None,
        **kwargs,
    ):
        label = f"{bucket}:{path}" if path else (bucket or "storage")
        try:
            response = self._session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise StorageRequestError(
                f"Could not connect to storage to {action} {label}: {exc}",
                bucket=bucket,
                path=path,
            ) from exc
        if response.status_code < 400:
            return response
        details = _error_details(response)
        # Supabase reports missing objects as 400 with a not-found message.
        if response.status_code == 404 or (
            response.status_code == 400 and "not found" in details.lower()
        ):
            raise StorageObjectNotFoundError(
                f"{label} was not found: {details or 'not found'}",
                bucket=bucket,
                path=path,
                status_code=response.status_code,
            )
        raise StorageRequestError(
            f"Storage answered {response.status_code} to {action} {label}: {details}",
            bucket=bucket,
            path=path,
            status_code=response.status_code,
        )

    def _json(self, response, *, action: str, bucket: str | None, path: str | None = None):
        try:
            return response.json()
        except ValueError as exc:
            raise StorageRequestError(
                f"Storage returned an invalid response to {action} {bucket or 'storage'}.",
                bucket=bucket,
                path=path,
                status_code=response.status_code,
            ) from exc

    def list_buckets(self) -> List[str]:
        response = self._request("GET", f"{self.base_url}/bucket", action="list buckets")
        payload = self._json(response, action="list buckets", bucket=None)
        if not isinstance(payload, list):
            raise StorageRequestError("Storage returned an invalid bucket listing.")
        return [str(item.get("name")) for item in payload if isinstance(item, dict) and item.get("name")]

    def list(self, bucket: str, prefix: str = "") -> List[StorageEntry]:
        clean_prefix = _clean_path(prefix)
        url = f"{self.base_url}/object/list/{quote(bucket, safe='')}"
        entries: List[StorageEntry] = []
        offset = 0
        while True:
            body = {
                "prefix": clean_prefix,
                "limit": LIST_PAGE_SIZE,
                "offset": offset,
                "sortBy": {"column": "name", "order": "asc"},
            }
            response = self._request(
                "POST", url, action="list", bucket=bucket, path=clean_prefix or None, json=body
            )
            payload = self._json(response, action="list", bucket=bucket, path=clean_prefix)
            if not isinstance(payload, list):
                raise StorageRequestError(
                    f"Storage returned an invalid listing for {bucket}:{clean_prefix}.",
                    bucket=bucket,
                    path=clean_prefix,
                )
            entries.extend(
                StorageEntry.from_api(item)
                for item in payload
                if isinstance(item, dict) and item.get("name")
            )
            if len(payload) < LIST_PAGE_SIZE:
                return entries
            offset += LIST_PAGE_SIZE

    def download(self, bucket: str, path: str) -> bytes:
        clean_path = _clean_path(path)
        if not clean_path:
            raise StorageConfigurationError("The requested storage path is empty.")
        url = f"{self.base_url}/object/{quote(bucket, safe='')}/{quote(clean_path, safe='/')}"
        response = self._request("GET", url, action="download", bucket=bucket, path=clean_path)
        return response.content

    def upload(
        self,
        bucket: str,
        path: str,
        content: bytes,
        *,
        content_type: str = "application/json",
        upsert: bool = True,
    ) -> None:
        clean_path = _clean_path(path)
        if not clean_path:
            raise StorageConfigurationError("The requested storage path is empty.")
        url = f"{self.base_url}/object/{quote(bucket, safe='')}/{quote(clean_path, safe='/')}"
        headers: Dict[str, str] = {
            "Content-Type": content_type,
            "Cache-Control": "max-age=3600",
            "x-upsert": "true" if upsert else "false",
        }
        self._request(
            "POST", url, action="upload", bucket=bucket, path=clean_path, data=content, headers=headers
        )

    def remove(self, bucket: str, paths: Iterable[str]) -> None:
        prefixes = [clean for clean in (_clean_path(path) for path in paths) if clean]
        if not prefixes:
            return
        url = f"{self.base_url}/object/{quote(bucket, safe='')}"
        self._request(
            "DELETE", url, action="remove", bucket=bucket, path=", ".join(prefixes), json={"prefixes": prefixes}
        )
