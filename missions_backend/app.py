import base64
import binascii
import json
import logging
import os
import secrets
import sqlite3
import sys
import threading
import time
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from flask import Flask, jsonify, request
from flask_cors import CORS

try:  # pragma: no cover - fallback for direct execution
    from .catalog_store import CatalogReadError, MissionCatalog
    from .integrations import supabase as supabase_integration
    from .json_renamer import RenameError, rename_mission_json_files
    from .mission_records import (
        MissionRecordError,
        delete_mission,
        display_title,
        get_mission,
        update_mission,
    )
    from .reconciler import (
        ASSETS_BUCKET,
        ERROR_BUCKET_NOT_FOUND,
        JSON_BUCKET,
        SyncResult,
        load_json_document,
        run_reconciliation,
    )
    from .storage_client import (
        StorageClient,
        StorageConfigurationError,
        StorageObjectNotFoundError,
        StorageRequestError,
    )
except ImportError:  # pragma: no cover - allow "python missions_backend/app.py"
    from catalog_store import CatalogReadError, MissionCatalog  # type: ignore
    from integrations import supabase as supabase_integration  # type: ignore
    from json_renamer import RenameError, rename_mission_json_files  # type: ignore
    from mission_records import (  # type: ignore
        MissionRecordError,
        delete_mission,
        display_title,
        get_mission,
        update_mission,
    )
    from reconciler import (  # type: ignore
        ASSETS_BUCKET,
        ERROR_BUCKET_NOT_FOUND,
        JSON_BUCKET,
        SyncResult,
        load_json_document,
        run_reconciliation,
    )
    from storage_client import (  # type: ignore
        StorageClient,
        StorageConfigurationError,
        StorageObjectNotFoundError,
        StorageRequestError,
    )


BASE_DIR = os.path.dirname(os.path.abspath(__file__))

logger = logging.getLogger(__name__)

SERVICE_SETTINGS_DEFINITIONS = {
    "supabase_url": {
        "label": "Supabase project URL",
        "category": "storage",
        "help_text": "Base URL of the Supabase project, e.g. https://xyzcompany.supabase.co.",
        "placeholder": "https://xyzcompany.supabase.co",
        "secret": False,
    },
    "supabase_service_key": {
        "label": "Supabase service role key",
        "category": "storage",
        "help_text": "Service role key used to read and write the mission buckets. Never share it outside the admin panel.",
        "placeholder": "eyJhbGciOi...",
        "secret": True,
    },
    "supabase_timeout": {
        "label": "Storage timeout (seconds)",
        "category": "storage",
        "help_text": "Maximum time in seconds for each storage request. Example: 10.",
        "placeholder": "10",
        "default": "10",
        "secret": False,
    },
    "missions_json_bucket": {
        "label": "Mission JSON bucket",
        "category": "missions",
        "help_text": "Bucket holding one JSON definition per mission.",
        "placeholder": JSON_BUCKET,
        "default": JSON_BUCKET,
        "secret": False,
    },
    "missions_assets_bucket": {
        "label": "Mission assets bucket",
        "category": "missions",
        "help_text": "Bucket assigned to new missions for their images and attachments.",
        "placeholder": ASSETS_BUCKET,
        "default": ASSETS_BUCKET,
        "secret": False,
    },
}

_SYNC_LOCK = threading.Lock()


def _sqlite_path() -> str:
    return os.environ.get("SQLITE_PATH") or os.path.join(BASE_DIR, "database.db")


def _service_settings_secret_file() -> Path:
    configured = os.environ.get("SERVICE_SETTINGS_KEY_FILE")
    if configured:
        return Path(configured)
    return Path(BASE_DIR) / ".service_settings_key"


def _use_sqlite_backend() -> bool:
    required_keys = ["DB_NAME", "DB_USER", "DB_PASSWORD", "DB_HOST"]
    return any(not os.environ.get(key) for key in required_keys)


def _normalize_setting_key(key: str) -> str:
    return (key or "").strip().lower()


def _get_setting_definition(key: str) -> Optional[dict]:
    normalized = _normalize_setting_key(key)
    return SERVICE_SETTINGS_DEFINITIONS.get(normalized)


_SERVICE_SETTINGS_SECRET_CACHE: Optional[bytes] = None


def _load_service_settings_secret() -> bytes:
    global _SERVICE_SETTINGS_SECRET_CACHE
    if _SERVICE_SETTINGS_SECRET_CACHE:
        return _SERVICE_SETTINGS_SECRET_CACHE

    secret_file = _service_settings_secret_file()
    try:
        if secret_file.exists():
            encoded = secret_file.read_text(encoding="utf-8").strip()
            if encoded:
                secret_bytes = base64.urlsafe_b64decode(encoded.encode("utf-8"))
                _SERVICE_SETTINGS_SECRET_CACHE = secret_bytes
                return secret_bytes
    except (OSError, ValueError, binascii.Error) as exc:
        logger.warning(
            "Failed to read service settings secret key from %s: %s",
            secret_file,
            exc,
        )

    secret_bytes = secrets.token_bytes(32)
    encoded_secret = base64.urlsafe_b64encode(secret_bytes).decode("utf-8")
    try:
        secret_file.write_text(encoded_secret, encoding="utf-8")
        try:
            os.chmod(secret_file, 0o600)
        except OSError:  # pragma: no cover - best effort on non-POSIX
            pass
    except OSError as exc:
        logger.warning(
            "Generated ephemeral service settings secret key; could not persist to %s: %s",
            secret_file,
            exc,
        )
    _SERVICE_SETTINGS_SECRET_CACHE = secret_bytes
    return secret_bytes


def _xor_bytes(data: bytes, key: bytes) -> bytes:
    key_length = len(key)
    if key_length == 0:
        raise ValueError("Encryption key must not be empty")
    return bytes(b ^ key[i % key_length] for i, b in enumerate(data))


def _encrypt_setting_value(value: str) -> str:
    key = _load_service_settings_secret()
    cipher = _xor_bytes(value.encode("utf-8"), key)
    return base64.urlsafe_b64encode(cipher).decode("utf-8")


def _decrypt_setting_value(value: str) -> str:
    if not value:
        return ""
    key = _load_service_settings_secret()
    try:
        cipher = base64.urlsafe_b64decode(value.encode("utf-8"))
    except (ValueError, binascii.Error) as exc:
        raise ValueError("Encrypted value has invalid format") from exc
    return _xor_bytes(cipher, key).decode("utf-8")


def get_service_setting(key: str) -> Optional[str]:
    definition = _get_setting_definition(key)
    if not definition:
        raise KeyError(f"Unknown service setting: {key}")
    normalized = _normalize_setting_key(key)
    try:
        init_db()
        with get_db_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT setting_key, value, is_secret FROM service_settings WHERE setting_key = %s",
                    (normalized,),
                )
                row = cur.fetchone()
    except Exception as exc:
        logger.error("Failed to read service setting %s: %s", normalized, exc)
        return None
    if not row or row.get("value") is None:
        return None
    value = str(row["value"])
    if definition.get("secret"):
        try:
            return _decrypt_setting_value(value)
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("Could not decrypt service setting %s: %s", normalized, exc)
            return None
    return value


def load_service_settings(keys: Iterable[str]) -> Dict[str, Optional[str]]:
    result: Dict[str, Optional[str]] = {}
    for key in keys:
        normalized = _normalize_setting_key(key)
        try:
            result[normalized] = get_service_setting(normalized)
        except KeyError:
            result[normalized] = None
    return result


def _validate_service_setting_input(key: str, value: Optional[str]) -> Optional[str]:
    definition = _get_setting_definition(key)
    if not definition:
        raise KeyError(f"Unknown service setting: {key}")
    if value is None:
        return None
    cleaned = value.strip()
    if not cleaned:
        return None
    normalized = _normalize_setting_key(key)
    if normalized == "supabase_timeout":
        try:
            timeout = float(cleaned)
        except ValueError as exc:
            raise ValueError(
                f"The field '{normalized}' must be a number of seconds."
            ) from exc
        if timeout <= 0:
            raise ValueError(f"The field '{normalized}' must be greater than zero seconds.")
    if normalized == "supabase_url" and not cleaned.lower().startswith(("http://", "https://")):
        raise ValueError(f"The field '{normalized}' must be an http(s) URL.")
    return cleaned


def _store_service_setting(cur, key: str, value: str, is_secret: bool) -> None:
    if getattr(cur, "__class__", None).__name__ == "SQLiteCursorWrapper":
        cur.execute(
            """
            INSERT INTO service_settings (setting_key, value, is_secret)
            VALUES (%s, %s, %s)
            ON CONFLICT(setting_key)
            DO UPDATE SET value = excluded.value, is_secret = excluded.is_secret,
                          updated_at = CURRENT_TIMESTAMP
            """,
            (key, value, 1 if is_secret else 0),
        )
    else:
        cur.execute(
            """
            INSERT INTO service_settings (setting_key, value, is_secret)
            VALUES (%s, %s, %s)
            ON DUPLICATE KEY UPDATE value = VALUES(value),
                                    is_secret = VALUES(is_secret),
                                    updated_at = CURRENT_TIMESTAMP
            """,
            (key, value, 1 if is_secret else 0),
        )


def set_service_setting(key: str, value: Optional[str]) -> None:
    definition = _get_setting_definition(key)
    if not definition:
        raise KeyError(f"Unknown service setting: {key}")
    normalized = _normalize_setting_key(key)
    cleaned = _validate_service_setting_input(normalized, value)
    try:
        init_db()
        with get_db_connection() as conn:
            with conn.cursor() as cur:
                if cleaned is None:
                    cur.execute("DELETE FROM service_settings WHERE setting_key = %s", (normalized,))
                else:
                    stored_value = (
                        _encrypt_setting_value(cleaned)
                        if definition.get("secret")
                        else cleaned
                    )
                    _store_service_setting(cur, normalized, stored_value, bool(definition.get("secret")))
    except Exception as exc:
        raise RuntimeError(f"Failed to persist service setting {normalized}: {exc}") from exc


class IntegrationValidationError(ValueError):
    """Raised when an external integration fails validation."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


def _effective_setting_value(key: str, value: Optional[str]) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    definition = _get_setting_definition(key)
    if definition:
        default_value = definition.get("default")
        if isinstance(default_value, str) and default_value.strip():
            return default_value.strip()
    return None


def _build_effective_settings(settings: Mapping[str, Optional[str]]) -> Dict[str, Optional[str]]:
    return {
        key: _effective_setting_value(key, settings.get(key))
        for key in SERVICE_SETTINGS_DEFINITIONS
    }


def _validate_storage_credentials(settings: Mapping[str, Optional[str]]) -> None:
    service_key = settings.get("supabase_service_key")
    url = settings.get("supabase_url")
    if not service_key and not url:
        return
    if not service_key or not url:
        missing = "supabase_service_key" if not service_key else "supabase_url"
        raise IntegrationValidationError(
            "Both the Supabase URL and the service role key are required.",
            field=missing,
        )
    result = supabase_integration.test_credentials(
        {
            "url": url,
            "service_key": service_key,
            "timeout": settings.get("supabase_timeout"),
            "bucket": settings.get("missions_json_bucket"),
        }
    )
    if not result.get("ok"):
        raise IntegrationValidationError(
            str(result.get("message") or "Could not validate the storage credentials."),
            field="supabase_service_key",
        )


def list_service_settings_for_admin() -> List[dict]:
    payload: List[dict] = []
    for key, definition in SERVICE_SETTINGS_DEFINITIONS.items():
        stored_value = get_service_setting(key)
        entry = {
            "key": key,
            "label": definition.get("label", key),
            "category": definition.get("category", "general"),
            "help_text": definition.get("help_text", ""),
            "placeholder": definition.get("placeholder", ""),
            "is_secret": bool(definition.get("secret")),
            "configured": bool(stored_value),
            "value": "" if definition.get("secret") else (stored_value or ""),
        }
        default_value = definition.get("default")
        if default_value:
            entry["default"] = default_value
        payload.append(entry)
    payload.sort(key=lambda item: (item.get("category", ""), item.get("label", "")))
    return payload


def _import_pymysql():
    try:
        import pymysql  # type: ignore
        from pymysql.cursors import DictCursor  # type: ignore
    except ModuleNotFoundError as exc:  # pragma: no cover - import guard
        raise RuntimeError(
            "The MySQL backend requires the 'pymysql' package. "
            "Install it or unset the DB_* variables to use SQLite."
        ) from exc
    return pymysql, DictCursor


class SQLiteCursorWrapper:
    def __init__(self, cursor: sqlite3.Cursor) -> None:
        self._cursor = cursor

    def __enter__(self) -> "SQLiteCursorWrapper":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @staticmethod
    def _normalize_query(query: str) -> str:
        return query.replace("%s", "?")

    def execute(self, query: str, params: Optional[Iterable] = None):
        normalized_query = self._normalize_query(query)
        if params is None:
            params = []
        self._cursor.execute(normalized_query, tuple(params))
        return self

    def fetchone(self):
        row = self._cursor.fetchone()
        if row is None:
            return None
        return dict(row)

    def fetchall(self):
        return [dict(row) for row in self._cursor.fetchall()]

    @property
    def rowcount(self) -> int:
        return self._cursor.rowcount

    def close(self) -> None:
        try:
            self._cursor.close()
        except sqlite3.Error:  # pragma: no cover - defensive
            pass


class SQLiteConnectionWrapper:
    is_sqlite = True

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._connection = connection

    def __enter__(self) -> "SQLiteConnectionWrapper":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is None:
                self._connection.commit()
            else:
                self._connection.rollback()
        finally:
            self.close()

    def cursor(self) -> SQLiteCursorWrapper:
        return SQLiteCursorWrapper(self._connection.cursor())

    def commit(self) -> None:
        self._connection.commit()

    def rollback(self) -> None:
        self._connection.rollback()

    def close(self) -> None:
        try:
            self._connection.close()
        except sqlite3.Error:  # pragma: no cover - defensive
            pass


def get_db_connection():
    if _use_sqlite_backend():
        connection = sqlite3.connect(_sqlite_path())
        connection.row_factory = sqlite3.Row
        return SQLiteConnectionWrapper(connection)

    pymysql, DictCursor = _import_pymysql()
    db_config = {
        "database": os.environ.get("DB_NAME"),
        "user": os.environ.get("DB_USER"),
        "password": os.environ.get("DB_PASSWORD"),
        "host": os.environ.get("DB_HOST"),
        "cursorclass": DictCursor,
        "charset": "utf8mb4",
        "autocommit": True,
    }

    instance_connection = os.environ.get("DB_INSTANCE_CONNECTION_NAME")
    if instance_connection:
        socket_dir = os.environ.get("DB_SOCKET_DIR", "/cloudsql")
        db_config["unix_socket"] = os.path.join(socket_dir, instance_connection)

    port_value = os.environ.get("DB_PORT")
    if port_value:
        db_config["port"] = int(port_value)

    connect_timeout = os.environ.get("DB_CONNECT_TIMEOUT")
    if connect_timeout:
        db_config["connect_timeout"] = int(connect_timeout)

    return pymysql.connect(**db_config)


def init_db():
    if _use_sqlite_backend():
        with get_db_connection() as conn:
            with conn.cursor() as cur:
                def ensure_column(table: str, column: str, definition: str) -> None:
                    cur.execute(f"PRAGMA table_info({table})")
                    existing = {row["name"] for row in cur.fetchall()}
                    if column not in existing:
                        cur.execute(
                            f"ALTER TABLE {table} ADD COLUMN {column} {definition}"
                        )

                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS missions (
                        id INTEGER NOT NULL PRIMARY KEY AUTOINCREMENT,
                        mission_uid TEXT UNIQUE,
                        order_no INTEGER UNIQUE,
                        object_path TEXT,
                        title TEXT,
                        assets_bucket TEXT,
                        assets_prefix TEXT,
                        unlock_playground INTEGER NOT NULL DEFAULT 0,
                        unlocks_projects INTEGER NOT NULL DEFAULT 0,
                        mission_data TEXT,
                        updated_at TEXT NOT NULL DEFAULT (CURRENT_TIMESTAMP)
                    )
                    """
                )
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS service_settings (
                        setting_key TEXT NOT NULL PRIMARY KEY,
                        value TEXT,
                        is_secret INTEGER NOT NULL DEFAULT 0,
                        updated_at TEXT NOT NULL DEFAULT (CURRENT_TIMESTAMP)
                    )
                    """
                )
                ensure_column("missions", "assets_bucket", "TEXT")
                ensure_column("missions", "assets_prefix", "TEXT")
                ensure_column("missions", "unlock_playground", "INTEGER NOT NULL DEFAULT 0")
                ensure_column("missions", "unlocks_projects", "INTEGER NOT NULL DEFAULT 0")
                ensure_column("missions", "updated_at", "TEXT")
                cur.execute(
                    "CREATE INDEX IF NOT EXISTS idx_missions_object_path ON missions(object_path)"
                )
        return

    with get_db_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS missions (
                    id INT NOT NULL AUTO_INCREMENT PRIMARY KEY,
                    mission_uid VARCHAR(255) NULL UNIQUE,
                    order_no INT NULL UNIQUE,
                    object_path VARCHAR(1024) NULL,
                    title VARCHAR(255) NULL,
                    assets_bucket VARCHAR(255) NULL,
                    assets_prefix VARCHAR(255) NULL,
                    unlock_playground TINYINT(1) NOT NULL DEFAULT 0,
                    unlocks_projects TINYINT(1) NOT NULL DEFAULT 0,
                    mission_data LONGTEXT NULL,
                    updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
                ) CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS service_settings (
                    setting_key VARCHAR(100) NOT NULL PRIMARY KEY,
                    value TEXT NULL,
                    is_secret TINYINT(1) NOT NULL DEFAULT 0,
                    updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
                        ON UPDATE CURRENT_TIMESTAMP
                ) CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci
                """
            )


def get_mission_catalog() -> MissionCatalog:
    init_db()
    return MissionCatalog(get_db_connection)


def get_storage_client() -> StorageClient:
    return StorageClient.from_settings()


def _setting_or_env(key: str, env_name: str, default: str) -> str:
    value = get_service_setting(key)
    if value:
        return value
    return (os.environ.get(env_name) or "").strip() or default


def missions_json_bucket() -> str:
    return _setting_or_env("missions_json_bucket", "MISSIONS_JSON_BUCKET", JSON_BUCKET)


def missions_assets_bucket() -> str:
    return _setting_or_env("missions_assets_bucket", "MISSIONS_ASSETS_BUCKET", ASSETS_BUCKET)


def _sync_deadline() -> Optional[float]:
    raw = (os.environ.get("MISSIONS_SYNC_DEADLINE_SECONDS") or "").strip()
    if not raw:
        return None
    try:
        seconds = float(raw)
    except ValueError:
        logger.warning("Ignoring invalid MISSIONS_SYNC_DEADLINE_SECONDS value %r", raw)
        return None
    if seconds <= 0:
        return None
    return time.monotonic() + seconds


def sync_missions_from_storage() -> Tuple[SyncResult, int]:
    """Run one reconciliation and map the outcome to an HTTP status code."""
    if not _SYNC_LOCK.acquire(blocking=False):
        return SyncResult(False, "A mission sync is already running."), 409
    try:
        try:
            storage = get_storage_client()
        except StorageConfigurationError as exc:
            return SyncResult(False, str(exc)), 500
        result = run_reconciliation(
            storage,
            get_mission_catalog(),
            bucket=missions_json_bucket(),
            assets_bucket=missions_assets_bucket(),
            deadline=_sync_deadline(),
        )
    finally:
        _SYNC_LOCK.release()
    if result.success:
        return result, 200
    if result.error_code == ERROR_BUCKET_NOT_FOUND:
        return result, 404
    return result, 500


def get_request_json():
    return request.get_json(silent=True)


def _load_secret_key() -> str:
    env_secret = (os.environ.get("SECRET_KEY") or "").strip()
    if env_secret:
        return env_secret
    logger.warning("SECRET_KEY environment variable not set; using an ephemeral secret key.")
    return secrets.token_hex(32)


def _create_app() -> Flask:
    app_instance = Flask(__name__)
    app_instance.config["SECRET_KEY"] = _load_secret_key()
    return app_instance


app = _create_app()

cors_origins = os.environ.get("CORS_ORIGINS")
if cors_origins:
    origins = [origin.strip() for origin in cors_origins.split(",") if origin.strip()]
    if not origins:
        origins = [cors_origins]
    CORS(app, origins=origins, supports_credentials=True)


@app.route("/healthz")
def healthcheck():
    return jsonify({"status": "ok"})


@app.route("/api/health")
def api_health():
    return jsonify({"ok": True})


@app.route("/api/missions/sync-from-storage", methods=["POST"])
def api_sync_missions_from_storage():
    try:
        result, status = sync_missions_from_storage()
    except Exception:
        logger.exception("Mission sync failed")
        result = SyncResult(False, "Failed to sync missions from storage.")
        status = 500
    return jsonify(result.to_dict()), status


@app.route("/api/missions", methods=["GET"])
def api_list_missions():
    try:
        missions = get_mission_catalog().list_missions()
    except CatalogReadError as exc:
        print(f"Database error on GET /api/missions: {exc}", file=sys.stderr)
        return jsonify({"error": "Database connection error."}), 500
    for mission in missions:
        mission["title"] = display_title(mission)
    return jsonify({"missions": missions})


@app.route("/api/missions/storage-json", methods=["GET"])
def api_list_storage_json():
    try:
        entries = get_storage_client().list(missions_json_bucket(), "")
    except (StorageConfigurationError, StorageRequestError) as exc:
        return jsonify({"error": str(exc) or "Unable to list mission JSON files."}), 500
    files = sorted(
        entry.name for entry in entries if entry.name.lower().endswith(".json")
    )
    return jsonify({"files": files})


def _normalize_file_name(file: str) -> str:
    return (file or "").strip().lstrip("/")


@app.route("/api/missions/storage-json/<path:file>", methods=["GET"])
def api_get_storage_json(file: str):
    file_name = _normalize_file_name(file)
    if not file_name:
        return jsonify({"error": "File name is required."}), 400
    try:
        content = get_storage_client().download(missions_json_bucket(), file_name)
    except StorageObjectNotFoundError:
        return jsonify({"error": f"File '{file_name}' not found."}), 404
    except (StorageConfigurationError, StorageRequestError) as exc:
        return jsonify({"error": str(exc) or "Unable to load mission JSON."}), 500
    try:
        mission = load_json_document(content)
    except (UnicodeDecodeError, ValueError) as exc:
        return jsonify({"error": f"Invalid JSON format: {exc}"}), 500
    return jsonify({"mission": mission, "file": file_name})


@app.route("/api/missions/storage-json/<path:file>", methods=["PUT"])
def api_put_storage_json(file: str):
    file_name = _normalize_file_name(file)
    if not file_name:
        return jsonify({"error": "File name is required."}), 400
    body = get_request_json()
    if body is None:
        return jsonify({"error": "The request body must be JSON."}), 400
    mission_data = body.get("mission_data", body) if isinstance(body, dict) else body
    if isinstance(mission_data, str):
        content = mission_data
    else:
        content = json.dumps(mission_data, ensure_ascii=False, indent=2)
    try:
        get_storage_client().upload(
            missions_json_bucket(),
            file_name,
            content.encode("utf-8"),
            content_type="application/json",
            upsert=True,
        )
    except (StorageConfigurationError, StorageRequestError) as exc:
        return jsonify({"error": str(exc) or "Failed to update mission JSON."}), 500
    return jsonify(
        {
            "success": True,
            "message": f"Mission JSON '{file_name}' updated successfully.",
            "mission": mission_data,
        }
    )


@app.route("/api/missions/rename-json", methods=["POST"])
def api_rename_mission_json():
    try:
        storage = get_storage_client()
        result = rename_mission_json_files(
            storage, get_mission_catalog(), bucket=missions_json_bucket()
        )
    except StorageConfigurationError as exc:
        return jsonify({"error": str(exc)}), 500
    except RenameError as exc:
        return jsonify({"error": str(exc)}), exc.status_code
    return jsonify(result)


@app.route("/api/missions/delete", methods=["POST"])
def api_delete_mission():
    try:
        result = delete_mission(
            get_storage_client, get_mission_catalog(), get_request_json(), bucket=missions_json_bucket()
        )
    except MissionRecordError as exc:
        return jsonify({"error": str(exc)}), exc.status_code
    return jsonify(result)


@app.route("/api/missions/<mission_uid>", methods=["GET"])
def api_get_mission(mission_uid: str):
    try:
        mission = get_mission(
            get_storage_client, get_mission_catalog(), mission_uid, bucket=missions_json_bucket()
        )
    except MissionRecordError as exc:
        return jsonify({"error": str(exc)}), exc.status_code
    return jsonify({"mission": mission})


@app.route("/api/missions/<mission_uid>", methods=["PUT"])
def api_update_mission(mission_uid: str):
    try:
        result = update_mission(
            get_storage_client,
            get_mission_catalog(),
            mission_uid,
            get_request_json(),
            bucket=missions_json_bucket(),
        )
    except MissionRecordError as exc:
        return jsonify({"error": str(exc)}), exc.status_code
    return jsonify(result)


@app.route("/api/admin/integrations", methods=["GET"])
def api_admin_list_integrations():
    try:
        settings = list_service_settings_for_admin()
    except Exception as exc:
        print(f"Failed to list service settings: {exc}", file=sys.stderr)
        return jsonify({"error": "Database connection error."}), 500
    return jsonify({"settings": settings})


@app.route("/api/admin/integrations", methods=["PUT"])
def api_admin_update_integrations():
    data = get_request_json()
    updates_raw = data.get("updates") if isinstance(data, dict) else None
    if not isinstance(updates_raw, list):
        return jsonify({"error": "The body must include 'updates' as an array."}), 400
    normalized_updates: List[Tuple[str, Optional[str]]] = []
    for item in updates_raw:
        if not isinstance(item, Mapping):
            return jsonify({"error": "Each update must be an object with 'key' and 'value'."}), 400
        raw_key = item.get("key")
        key = _normalize_setting_key(raw_key if isinstance(raw_key, str) else str(raw_key or ""))
        if not key:
            return jsonify({"error": "Each update must name the key to change."}), 400
        if not _get_setting_definition(key):
            return jsonify({"error": f"The key '{key}' is not a known integration setting."}), 400
        value = item.get("value")
        if item.get("clear") or value is None:
            normalized_updates.append((key, None))
        else:
            normalized_updates.append((key, value if isinstance(value, str) else str(value)))
    if not normalized_updates:
        return jsonify({"settings": list_service_settings_for_admin(), "updated_keys": []})
    pending_settings = load_service_settings(SERVICE_SETTINGS_DEFINITIONS.keys())
    prepared_updates: List[Tuple[str, Optional[str]]] = []
    for key, value in normalized_updates:
        try:
            cleaned_value = _validate_service_setting_input(key, value)
        except ValueError as exc:
            return jsonify({"error": str(exc), "field": key}), 400
        pending_settings[key] = cleaned_value
        prepared_updates.append((key, cleaned_value))
    try:
        _validate_storage_credentials(_build_effective_settings(pending_settings))
    except IntegrationValidationError as exc:
        payload = {"error": str(exc)}
        if exc.field:
            payload["field"] = exc.field
        return jsonify(payload), 400
    applied: List[str] = []
    for key, cleaned_value in prepared_updates:
        try:
            set_service_setting(key, cleaned_value)
        except RuntimeError as exc:
            print(f"Failed to update service setting {key}: {exc}", file=sys.stderr)
            return jsonify({"error": "Database connection error."}), 500
        applied.append(key)
    return jsonify({"settings": list_service_settings_for_admin(), "updated_keys": applied})
