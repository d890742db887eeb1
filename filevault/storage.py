import hashlib
import json
import logging
import math
import os
import shutil
import sqlite3
import time
import uuid
from contextlib import contextmanager
from pathlib import Path, PurePosixPath
from typing import Dict, Generator, Iterable, List, Optional

BASE_DIR = Path(__file__).resolve().parent


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


STORAGE_ROOT = _resolve_env_path("FILEVAULT_STORAGE_ROOT", BASE_DIR)
DATA_DIR = _resolve_env_path("FILEVAULT_DATA_DIR", STORAGE_ROOT / "data")
UPLOADS_DIR = _resolve_env_path("FILEVAULT_UPLOADS_DIR", STORAGE_ROOT / "uploads")
LOGS_DIR = _resolve_env_path("FILEVAULT_LOGS_DIR", STORAGE_ROOT / "logs")
DB_PATH = DATA_DIR / "filevault.db"
CONFIG_PATH = DATA_DIR / "config.json"

logger = logging.getLogger("filevault.storage")


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logging.getLogger("filevault.config").warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


DEFAULT_MAX_UPLOAD_MB = _safe_int_env("FILEVAULT_MAX_UPLOAD_SIZE_MB", 500)
DEFAULT_AUTH_RATE_LIMIT_PER_MINUTE = _safe_int_env("FILEVAULT_RATE_LIMIT_AUTH_PER_MINUTE", 1000)
DEFAULT_UPLOAD_RATE_LIMIT_PER_HOUR = _safe_int_env("FILEVAULT_RATE_LIMIT_UPLOADS_PER_HOUR", 10000)
DEFAULT_DOWNLOAD_RATE_LIMIT_PER_MINUTE = _safe_int_env("FILEVAULT_RATE_LIMIT_DOWNLOADS_PER_MINUTE", 10000)
DEFAULT_ADMIN_RATE_LIMIT_PER_MINUTE = _safe_int_env("FILEVAULT_RATE_LIMIT_ADMIN_PER_MINUTE", 500)


DEFAULT_CONFIG = {
    "max_upload_size_mb": float(DEFAULT_MAX_UPLOAD_MB),
    "auth_rate_limit_per_minute": float(DEFAULT_AUTH_RATE_LIMIT_PER_MINUTE),
    "upload_rate_limit_per_hour": float(DEFAULT_UPLOAD_RATE_LIMIT_PER_HOUR),
    "download_rate_limit_per_minute": float(DEFAULT_DOWNLOAD_RATE_LIMIT_PER_MINUTE),
    "admin_rate_limit_per_minute": float(DEFAULT_ADMIN_RATE_LIMIT_PER_MINUTE),
}

CONFIG_NUMERIC_KEYS = set(DEFAULT_CONFIG)


def get_config_mtime() -> float:
    """Return the last modified timestamp for the persisted config file."""

    ensure_directories()
    try:
        return CONFIG_PATH.stat().st_mtime
    except OSError:
        return 0.0


def _coerce_numeric(value, default):
    """Coerce a value to float, rejecting NaN and infinity."""
    try:
        coerced = float(value)
        if math.isnan(coerced) or math.isinf(coerced):
            return float(default)
    except (TypeError, ValueError):
        return float(default)
    return float(coerced)


def _normalize_config(raw_config: Dict[str, float]) -> Dict[str, float]:
    if not isinstance(raw_config, dict):
        raw_config = {}

    config = DEFAULT_CONFIG.copy()
    for key in CONFIG_NUMERIC_KEYS:
        if key in raw_config:
            config[key] = _coerce_numeric(raw_config.get(key), config[key])
        if config[key] < 1:
            config[key] = DEFAULT_CONFIG[key]
    return config


def load_config() -> Dict[str, float]:
    ensure_directories()
    if CONFIG_PATH.exists():
        with CONFIG_PATH.open("r", encoding="utf-8") as config_file:
            try:
                raw = json.load(config_file)
            except json.JSONDecodeError:
                logger.warning("config_unreadable path=%s - using defaults", CONFIG_PATH)
                raw = DEFAULT_CONFIG.copy()
    else:
        raw = DEFAULT_CONFIG.copy()
        save_config(raw)

    data = _normalize_config(raw)
    if raw != data:
        save_config(data)
    return data


def save_config(config: Dict[str, float]) -> None:
    ensure_directories()
    normalized = _normalize_config(config)

    # Write to temporary file first for atomic update
    temp_path = CONFIG_PATH.with_suffix(".tmp")
    try:
        with temp_path.open("w", encoding="utf-8") as config_file:
            json.dump(normalized, config_file, indent=2)
            config_file.flush()
            os.fsync(config_file.fileno())
        temp_path.replace(CONFIG_PATH)
    except Exception:
        if temp_path.exists():
            try:
                temp_path.unlink()
            except OSError:
                pass
        raise


def hash_api_key(key: str) -> str:
    """Hash an API key using SHA-256 for persistent storage."""

    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def ensure_directories() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)


def is_safe_object_key(key: str) -> bool:
    """Return True when *key* is a relative, traversal-free POSIX path."""

    if not key or "\\" in key or "\x00" in key:
        return False
    candidate = PurePosixPath(key)
    if candidate.is_absolute():
        return False
    return all(part not in {"", ".", ".."} for part in key.split("/"))


def get_warehouse_dir(warehouse_id: str) -> Path:
    if not is_safe_object_key(warehouse_id) or "/" in warehouse_id:
        raise ValueError("Invalid warehouse id")
    return UPLOADS_DIR / warehouse_id


def get_storage_path(warehouse_id: str, filename: str, ensure_parent: bool = False) -> Path:
    """Return the on-disk location of *filename* inside its warehouse directory."""

    directory = get_warehouse_dir(warehouse_id)
    if not is_safe_object_key(filename):
        raise ValueError("Invalid filename")

    candidate = directory / filename
    uploads_root = UPLOADS_DIR.resolve()
    if uploads_root not in candidate.resolve().parents:
        raise ValueError("Path escapes the uploads directory")
    if ensure_parent:
        candidate.parent.mkdir(parents=True, exist_ok=True)
    return candidate


def prune_empty_upload_dirs(path: Path) -> None:
    """Remove empty directories left behind after file deletion."""

    current = path
    try:
        current = current.resolve()
    except FileNotFoundError:
        return

    uploads_root = UPLOADS_DIR.resolve()
    while current != uploads_root and uploads_root in current.parents:
        try:
            current.rmdir()
        except OSError:
            break
        current = current.parent


@contextmanager
def get_db() -> Generator[sqlite3.Connection, None, None]:
    ensure_directories()
    conn = sqlite3.connect(DB_PATH, timeout=30.0)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        if conn.in_transaction:
            conn.commit()
    except Exception:
        if conn.in_transaction:
            conn.rollback()
        raise
    finally:
        conn.close()


def init_db() -> None:
    with get_db() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS warehouses (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                notes TEXT,
                created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS api_keys (
                id TEXT PRIMARY KEY,
                warehouse_id TEXT NOT NULL REFERENCES warehouses(id) ON DELETE CASCADE,
                key_hash TEXT NOT NULL UNIQUE,
                key_encrypted TEXT NOT NULL DEFAULT '',
                created_at REAL NOT NULL,
                last_used_at REAL
            );

            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT NOT NULL UNIQUE,
                password_hash TEXT NOT NULL,
                role TEXT NOT NULL DEFAULT 'user',
                name TEXT,
                created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS user_warehouses (
                user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                warehouse_id TEXT NOT NULL REFERENCES warehouses(id) ON DELETE CASCADE,
                PRIMARY KEY (user_id, warehouse_id)
            );

            CREATE TABLE IF NOT EXISTS files (
                id TEXT PRIMARY KEY,
                warehouse_id TEXT NOT NULL REFERENCES warehouses(id) ON DELETE CASCADE,
                filename TEXT NOT NULL,
                original_name TEXT NOT NULL,
                uploaded_at REAL NOT NULL,
                uploader TEXT NOT NULL,
                size INTEGER NOT NULL DEFAULT 0,
                mime_type TEXT NOT NULL DEFAULT 'application/octet-stream',
                is_verified INTEGER NOT NULL DEFAULT 0,
                verified_by TEXT,
                verified_at REAL,
                UNIQUE (warehouse_id, filename)
            );

            CREATE INDEX IF NOT EXISTS idx_files_warehouse ON files(warehouse_id);
            CREATE INDEX IF NOT EXISTS idx_api_keys_warehouse ON api_keys(warehouse_id);
            """
        )


# Warehouses ---------------------------------------------------------------


def create_warehouse(name: str, notes: Optional[str] = None) -> sqlite3.Row:
    warehouse_id = f"w-{uuid.uuid4().hex[:12]}"
    with get_db() as conn:
        conn.execute(
            "INSERT INTO warehouses (id, name, notes, created_at) VALUES (?, ?, ?, ?)",
            (warehouse_id, name.strip(), (notes or "").strip() or None, time.time()),
        )
    logger.info("warehouse_created warehouse_id=%s", warehouse_id)
    return get_warehouse(warehouse_id)


def get_warehouse(warehouse_id: str) -> Optional[sqlite3.Row]:
    with get_db() as conn:
        return conn.execute(
            "SELECT * FROM warehouses WHERE id = ?", (warehouse_id,)
        ).fetchone()


def list_warehouses(warehouse_ids: Optional[Iterable[str]] = None) -> List[sqlite3.Row]:
    """Return warehouses, optionally restricted to *warehouse_ids*."""

    with get_db() as conn:
        if warehouse_ids is None:
            return conn.execute(
                "SELECT * FROM warehouses ORDER BY created_at"
            ).fetchall()
        ids = list(warehouse_ids)
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        return conn.execute(
            f"SELECT * FROM warehouses WHERE id IN ({placeholders}) ORDER BY created_at",
            ids,
        ).fetchall()


def warehouses_exist(warehouse_ids: Iterable[str]) -> bool:
    ids = set(warehouse_ids)
    if not ids:
        return True
    return len(list_warehouses(ids)) == len(ids)


def delete_warehouse(warehouse_id: str) -> bool:
    """Delete a warehouse with its keys, entitlements, file records and bytes."""

    with get_db() as conn:
        cursor = conn.execute("DELETE FROM warehouses WHERE id = ?", (warehouse_id,))
        if cursor.rowcount == 0:
            return False

    try:
        directory = get_warehouse_dir(warehouse_id)
    except ValueError:
        directory = None
    if directory is not None and directory.exists():
        try:
            shutil.rmtree(directory)
        except OSError as error:
            logger.warning(
                "warehouse_directory_remove_failed warehouse_id=%s error=%s",
                warehouse_id,
                error,
            )
    logger.info("warehouse_deleted warehouse_id=%s", warehouse_id)
    return True


# API keys -----------------------------------------------------------------


def create_api_key(warehouse_id: str, raw_key: str, key_encrypted: str = "") -> sqlite3.Row:
    key_id = uuid.uuid4().hex
    with get_db() as conn:
        conn.execute(
            """
            INSERT INTO api_keys (id, warehouse_id, key_hash, key_encrypted, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (key_id, warehouse_id, hash_api_key(raw_key), key_encrypted or "", time.time()),
        )
        return conn.execute("SELECT * FROM api_keys WHERE id = ?", (key_id,)).fetchone()


def find_api_key(raw_key: str) -> Optional[sqlite3.Row]:
    """Look up an API key by its raw value and record its use."""

    if not raw_key:
        return None
    key_hash = hash_api_key(raw_key)
    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM api_keys WHERE key_hash = ?", (key_hash,)
        ).fetchone()
        if row is not None:
            conn.execute(
                "UPDATE api_keys SET last_used_at = ? WHERE id = ?",
                (time.time(), row["id"]),
            )
        return row


def list_api_keys() -> List[sqlite3.Row]:
    with get_db() as conn:
        return conn.execute(
            """
            SELECT api_keys.*, warehouses.name AS warehouse_name
            FROM api_keys
            LEFT JOIN warehouses ON warehouses.id = api_keys.warehouse_id
            ORDER BY api_keys.created_at
            """
        ).fetchall()


# Users --------------------------------------------------------------------


def _set_user_warehouses(conn: sqlite3.Connection, user_id: str, warehouse_ids: Iterable[str]) -> None:
    conn.execute("DELETE FROM user_warehouses WHERE user_id = ?", (user_id,))
    conn.executemany(
        "INSERT OR IGNORE INTO user_warehouses (user_id, warehouse_id) VALUES (?, ?)",
        [(user_id, warehouse_id) for warehouse_id in warehouse_ids],
    )


def create_user(
    email: str,
    password_hash: str,
    role: str = "user",
    name: Optional[str] = None,
    warehouse_ids: Iterable[str] = (),
    user_id: Optional[str] = None,
) -> sqlite3.Row:
    user_id = user_id or f"user-{uuid.uuid4().hex[:12]}"
    with get_db() as conn:
        conn.execute(
            """
            INSERT INTO users (id, email, password_hash, role, name, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (user_id, email.strip(), password_hash, role, name or None, time.time()),
        )
        _set_user_warehouses(conn, user_id, warehouse_ids)
    logger.info("user_created user_id=%s role=%s", user_id, role)
    return get_user(user_id)


def get_user(user_id: str) -> Optional[sqlite3.Row]:
    with get_db() as conn:
        return conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()


def get_user_by_email(email: str) -> Optional[sqlite3.Row]:
    with get_db() as conn:
        return conn.execute(
            "SELECT * FROM users WHERE email = ?", ((email or "").strip(),)
        ).fetchone()


def count_users() -> int:
    with get_db() as conn:
        return int(conn.execute("SELECT COUNT(*) FROM users").fetchone()[0])


def list_users() -> List[sqlite3.Row]:
    with get_db() as conn:
        return conn.execute("SELECT * FROM users ORDER BY created_at").fetchall()


def get_user_warehouse_ids(user_id: str) -> List[str]:
    with get_db() as conn:
        rows = conn.execute(
            "SELECT warehouse_id FROM user_warehouses WHERE user_id = ? ORDER BY warehouse_id",
            (user_id,),
        ).fetchall()
    return [row["warehouse_id"] for row in rows]


def update_user(
    user_id: str,
    *,
    email: Optional[str] = None,
    name: Optional[str] = None,
    role: Optional[str] = None,
    password_hash: Optional[str] = None,
    warehouse_ids: Optional[Iterable[str]] = None,
) -> Optional[sqlite3.Row]:
    updates = {
        "email": email.strip() if email else None,
        "name": name,
        "role": role,
        "password_hash": password_hash,
    }
    assignments = {column: value for column, value in updates.items() if value is not None}
    with get_db() as conn:
        if conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)).fetchone() is None:
            return None
        if assignments:
            clause = ", ".join(f"{column} = ?" for column in assignments)
            conn.execute(
                f"UPDATE users SET {clause} WHERE id = ?",
                (*assignments.values(), user_id),
            )
        if warehouse_ids is not None:
            _set_user_warehouses(conn, user_id, warehouse_ids)
    return get_user(user_id)


def delete_user(user_id: str) -> bool:
    with get_db() as conn:
        cursor = conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
        return cursor.rowcount > 0


# Files --------------------------------------------------------------------


def register_file(
    warehouse_id: str,
    filename: str,
    original_name: str,
    uploader: str,
    size: int,
    mime_type: Optional[str] = None,
    is_verified: bool = False,
    verified_by: Optional[str] = None,
) -> sqlite3.Row:
    file_id = f"f-{uuid.uuid4().hex[:16]}"
    now = time.time()
    with get_db() as conn:
        conn.execute(
            """
            INSERT INTO files (
                id, warehouse_id, filename, original_name, uploaded_at, uploader,
                size, mime_type, is_verified, verified_by, verified_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                file_id,
                warehouse_id,
                filename,
                original_name,
                now,
                uploader,
                int(size),
                mime_type or "application/octet-stream",
                1 if is_verified else 0,
                verified_by if is_verified else None,
                now if is_verified else None,
            ),
        )
    logger.info(
        "file_registered file_id=%s warehouse_id=%s size=%d verified=%s",
        file_id,
        warehouse_id,
        int(size),
        bool(is_verified),
    )
    return get_file(file_id)


def get_file(file_id: str) -> Optional[sqlite3.Row]:
    with get_db() as conn:
        return conn.execute("SELECT * FROM files WHERE id = ?", (file_id,)).fetchone()


def get_file_by_key(warehouse_id: str, filename: str) -> Optional[sqlite3.Row]:
    with get_db() as conn:
        return conn.execute(
            "SELECT * FROM files WHERE warehouse_id = ? AND filename = ?",
            (warehouse_id, filename),
        ).fetchone()


def list_files(warehouse_ids: Optional[Iterable[str]] = None) -> List[sqlite3.Row]:
    with get_db() as conn:
        if warehouse_ids is None:
            return conn.execute("SELECT * FROM files ORDER BY uploaded_at DESC").fetchall()
        ids = list(warehouse_ids)
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        return conn.execute(
            f"SELECT * FROM files WHERE warehouse_id IN ({placeholders}) ORDER BY uploaded_at DESC",
            ids,
        ).fetchall()


def set_file_verification(file_id: str, is_verified: bool, verified_by: str) -> Optional[sqlite3.Row]:
    with get_db() as conn:
        cursor = conn.execute(
            "UPDATE files SET is_verified = ?, verified_by = ?, verified_at = ? WHERE id = ?",
            (1 if is_verified else 0, verified_by, time.time(), file_id),
        )
        if cursor.rowcount == 0:
            return None
    logger.info(
        "file_verification_changed file_id=%s verified=%s by=%s",
        file_id,
        bool(is_verified),
        verified_by,
    )
    return get_file(file_id)


def delete_file(file_id: str) -> bool:
    record = get_file(file_id)
    if not record:
        return False

    try:
        file_path = get_storage_path(record["warehouse_id"], record["filename"])
    except ValueError:
        file_path = None

    with get_db() as conn:
        conn.execute("BEGIN IMMEDIATE")
        cursor = conn.execute("DELETE FROM files WHERE id = ?", (file_id,))
        if cursor.rowcount == 0:
            conn.rollback()
            return False

        # Remove bytes before committing so a failed unlink keeps the record.
        if file_path is not None and file_path.exists():
            try:
                file_path.unlink()
                prune_empty_upload_dirs(file_path.parent)
            except OSError as error:
                logger.warning(
                    "file_delete_disk_failed file_id=%s path=%s error=%s - rolling back transaction",
                    file_id,
                    file_path,
                    error,
                )
                conn.rollback()
                return False
        conn.commit()

    logger.info(
        "file_deleted file_id=%s warehouse_id=%s filename=%s",
        file_id,
        record["warehouse_id"],
        record["filename"],
    )
    return True


def get_storage_statistics() -> Dict[str, int]:
    with get_db() as conn:
        row = conn.execute(
            "SELECT COUNT(*) AS total_files, COALESCE(SUM(size), 0) AS total_bytes FROM files"
        ).fetchone()
    return {
        "total_files": int(row["total_files"] or 0),
        "total_bytes": int(row["total_bytes"] or 0),
    }


ensure_directories()
init_db()
