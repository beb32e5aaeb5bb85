import hashlib
import json
import logging
import os
import secrets
import shutil
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Generator, Iterable, List, Optional

BASE_DIR = Path(__file__).resolve().parent


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logger = logging.getLogger("sitehost.config")
        logger.warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


def _bool_env(key: str, default: bool) -> bool:
    raw_value = os.environ.get(key)
    if raw_value is None or raw_value.strip() == "":
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


STORAGE_ROOT = _resolve_env_path("SITEHOST_STORAGE_ROOT", BASE_DIR)
DATA_DIR = _resolve_env_path("SITEHOST_DATA_DIR", STORAGE_ROOT / "data")
SITES_ROOT = _resolve_env_path("SITEHOST_SITES_ROOT", STORAGE_ROOT / "sites")
LOGS_DIR = _resolve_env_path("SITEHOST_LOGS_DIR", STORAGE_ROOT / "logs")
DB_PATH = DATA_DIR / "sitehost.db"

BYTES_PER_MB = 1024 * 1024
CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming

DOMAIN = os.environ.get("SITEHOST_DOMAIN", "localhost").strip().lower() or "localhost"
CADDY_ADMIN_URL = os.environ.get("SITEHOST_CADDY_ADMIN_URL", "http://localhost:2019").rstrip("/")
CADDY_SERVER_NAME = os.environ.get("SITEHOST_CADDY_SERVER", "srv0")
PROXY_SYNC_MODE = os.environ.get("SITEHOST_PROXY_SYNC_MODE", "incremental").strip().lower()
PROXY_TIMEOUT_SECONDS = _safe_int_env("SITEHOST_PROXY_TIMEOUT_SECONDS", 5)
PROXY_RESYNC_MINUTES = _safe_int_env("SITEHOST_PROXY_RESYNC_MINUTES", 0, min_value=0)

RATE_LIMIT_WINDOW_MS = _safe_int_env("SITEHOST_RATE_LIMIT_WINDOW_MS", 60_000)
RATE_LIMIT_MAX_REQUESTS = _safe_int_env("SITEHOST_RATE_LIMIT_MAX", 100)
RATE_LIMIT_COMPACT_MINUTES = 5

MAX_FILE_SIZE_MB = _safe_int_env("SITEHOST_MAX_FILE_MB", 50)
DEFAULT_QUOTA_MB = _safe_int_env("SITEHOST_DEFAULT_QUOTA_MB", 100)

ACCESS_LOG_PATH: Optional[Path] = (
    Path(os.environ["SITEHOST_ACCESS_LOG_PATH"]).expanduser()
    if os.environ.get("SITEHOST_ACCESS_LOG_PATH")
    else None
)
SCHEDULER_ENABLED = _bool_env("SITEHOST_SCHEDULER_ENABLED", True)
TRUSTED_PROXIES = [
    entry.strip()
    for entry in os.environ.get("SITEHOST_TRUSTED_PROXIES", "").split(",")
    if entry.strip()
]

# In-flight uploads are written next to their target under this suffix and
# renamed into place once complete.
TEMP_SUFFIX = ".sitehost-tmp"
API_KEY_PREFIX = "sk_"
ORPHAN_DIR_GRACE_SECONDS = 15 * 60


def ensure_directories() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    SITES_ROOT.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)


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
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sites (
                id INTEGER PRIMARY KEY,
                name TEXT UNIQUE NOT NULL,
                path TEXT NOT NULL,
                auth_user TEXT,
                auth_hash TEXT,
                quota_bytes INTEGER NOT NULL,
                used_bytes INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL
            )
            """
        )
        conn.commit()
        columns = {
            row["name"]
            for row in conn.execute("PRAGMA table_info(sites)")
        }
        if "quota_bytes" not in columns:
            conn.execute(
                "ALTER TABLE sites ADD COLUMN quota_bytes INTEGER NOT NULL "
                f"DEFAULT {int(DEFAULT_QUOTA_MB * BYTES_PER_MB)}"
            )
            conn.commit()
        if "used_bytes" not in columns:
            conn.execute("ALTER TABLE sites ADD COLUMN used_bytes INTEGER NOT NULL DEFAULT 0")
            conn.commit()
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS api_keys (
                id INTEGER PRIMARY KEY,
                key_hash TEXT UNIQUE NOT NULL,
                name TEXT NOT NULL,
                created_at REAL NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS access_log (
                id INTEGER PRIMARY KEY,
                site_id INTEGER REFERENCES sites(id) ON DELETE CASCADE,
                ip TEXT,
                path TEXT,
                status INTEGER,
                timestamp REAL NOT NULL
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_access_log_site ON access_log(site_id)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_access_log_timestamp ON access_log(timestamp)"
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS ingest_offsets (
                path TEXT PRIMARY KEY,
                inode INTEGER NOT NULL,
                position INTEGER NOT NULL
            )
            """
        )
        conn.commit()


# --- Site registry -----------------------------------------------------------


def get_site_path(name: str) -> Path:
    return SITES_ROOT / name


def get_site(name: str) -> Optional[sqlite3.Row]:
    with get_db() as conn:
        cursor = conn.execute("SELECT * FROM sites WHERE name = ?", (name,))
        return cursor.fetchone()


def list_sites() -> List[sqlite3.Row]:
    with get_db() as conn:
        cursor = conn.execute("SELECT * FROM sites ORDER BY created_at DESC, id DESC")
        return cursor.fetchall()


def create_site(
    name: str,
    path: Path,
    auth_user: Optional[str] = None,
    auth_hash: Optional[str] = None,
    quota_bytes: Optional[int] = None,
) -> sqlite3.Row:
    """Insert a site row; raises ``sqlite3.IntegrityError`` if *name* is taken."""

    quota = int(quota_bytes) if quota_bytes is not None else DEFAULT_QUOTA_MB * BYTES_PER_MB
    with get_db() as conn:
        conn.execute(
            """
            INSERT INTO sites (name, path, auth_user, auth_hash, quota_bytes, used_bytes, created_at)
            VALUES (?, ?, ?, ?, ?, 0, ?)
            """,
            (name, str(path), auth_user, auth_hash, quota, time.time()),
        )
        conn.commit()
        return conn.execute("SELECT * FROM sites WHERE name = ?", (name,)).fetchone()


def delete_site(name: str) -> bool:
    with get_db() as conn:
        cursor = conn.execute("DELETE FROM sites WHERE name = ?", (name,))
        conn.commit()
        removed = cursor.rowcount > 0
    if removed:
        logger.info("site_row_deleted name=%s", name)
    return removed


def update_site_auth(
    name: str, auth_user: Optional[str], auth_hash: Optional[str]
) -> Optional[sqlite3.Row]:
    with get_db() as conn:
        conn.execute(
            "UPDATE sites SET auth_user = ?, auth_hash = ? WHERE name = ?",
            (auth_user, auth_hash, name),
        )
        conn.commit()
        return conn.execute("SELECT * FROM sites WHERE name = ?", (name,)).fetchone()


def update_site_quota(name: str, quota_bytes: int) -> Optional[sqlite3.Row]:
    with get_db() as conn:
        conn.execute(
            "UPDATE sites SET quota_bytes = ? WHERE name = ?",
            (max(0, int(quota_bytes)), name),
        )
        conn.commit()
        return conn.execute("SELECT * FROM sites WHERE name = ?", (name,)).fetchone()


def set_used_bytes(name: str, used_bytes: int) -> None:
    with get_db() as conn:
        conn.execute(
            "UPDATE sites SET used_bytes = ? WHERE name = ?",
            (max(0, int(used_bytes)), name),
        )
        conn.commit()


def adjust_used_bytes(name: str, delta: int) -> Optional[int]:
    """Apply *delta* to ``used_bytes`` (floored at zero) and return the new value."""

    with get_db() as conn:
        conn.execute("BEGIN IMMEDIATE")
        conn.execute(
            "UPDATE sites SET used_bytes = MAX(0, used_bytes + ?) WHERE name = ?",
            (int(delta), name),
        )
        row = conn.execute(
            "SELECT used_bytes FROM sites WHERE name = ?", (name,)
        ).fetchone()
        conn.commit()
    return int(row["used_bytes"]) if row else None


# --- API keys ----------------------------------------------------------------


def hash_api_key(key: str) -> str:
    """Hash an API key using SHA-256 for persistent storage."""

    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def generate_api_key() -> str:
    return f"{API_KEY_PREFIX}{secrets.token_urlsafe(32)}"


def create_api_key(name: str) -> tuple[str, sqlite3.Row]:
    """Create and persist a new API key; the raw key is only returned here."""

    raw_key = generate_api_key()
    with get_db() as conn:
        conn.execute(
            "INSERT INTO api_keys (key_hash, name, created_at) VALUES (?, ?, ?)",
            (hash_api_key(raw_key), name, time.time()),
        )
        conn.commit()
        row = conn.execute(
            "SELECT id, name, created_at FROM api_keys WHERE key_hash = ?",
            (hash_api_key(raw_key),),
        ).fetchone()
    logger.info("api_key_created id=%s name=%s", row["id"], name)
    return raw_key, row


def get_api_key(raw_key: str) -> Optional[sqlite3.Row]:
    if not raw_key:
        return None
    with get_db() as conn:
        cursor = conn.execute(
            "SELECT id, name, created_at FROM api_keys WHERE key_hash = ?",
            (hash_api_key(raw_key),),
        )
        return cursor.fetchone()


# --- Site directories --------------------------------------------------------


def iter_site_files(root: Path) -> Iterable[Dict[str, object]]:
    """Yield every regular file under *root*, skipping in-flight uploads."""

    root = Path(root)
    if not root.is_dir():
        return
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for filename in sorted(filenames):
            if filename.endswith(TEMP_SUFFIX):
                continue
            full_path = Path(dirpath) / filename
            try:
                stat = full_path.stat()
            except OSError:
                continue
            yield {
                "name": filename,
                "path": full_path.relative_to(root).as_posix(),
                "size": stat.st_size,
                "modified": stat.st_mtime,
            }


def directory_size(root: Path) -> int:
    return sum(int(entry["size"]) for entry in iter_site_files(root))


def prune_empty_dirs(path: Path, root: Path) -> None:
    """Remove empty directories from *path* up to, but not including, *root*."""

    current = Path(path)
    root = Path(root)
    while current != root and root in current.parents:
        try:
            current.rmdir()
        except OSError:
            break
        current = current.parent


def remove_site_directory(path: Path) -> None:
    """Delete a site directory tree; raises ``OSError`` on failure."""

    path = Path(path)
    if path.exists():
        shutil.rmtree(path)


def cleanup_orphaned_site_dirs(min_age_seconds: int = ORPHAN_DIR_GRACE_SECONDS) -> int:
    """Remove site directories that have no corresponding registry row.

    Directories touched within *min_age_seconds* are left alone: site creation
    makes the directory before it inserts the row.
    """

    ensure_directories()
    removed = 0
    cutoff = time.time() - min_age_seconds
    try:
        with get_db() as conn:
            valid_names = {row["name"] for row in conn.execute("SELECT name FROM sites")}

        for entry in SITES_ROOT.iterdir():
            if not entry.is_dir() or entry.name in valid_names:
                continue
            try:
                if entry.stat().st_mtime >= cutoff or get_site(entry.name) is not None:
                    continue
                shutil.rmtree(entry)
                removed += 1
                logger.info("orphan_site_dir_removed path=%s", entry)
            except OSError as error:
                logger.warning("orphan_site_dir_cleanup_failed path=%s error=%s", entry, error)
    except Exception as e:
        logger.exception("cleanup_orphaned_site_dirs_exception error=%s", str(e))

    if removed:
        logger.info("orphan_cleanup_completed removed=%d", removed)
    return removed


def cleanup_temp_files(max_age_seconds: int = 3600) -> int:
    """Remove lingering temporary upload files."""

    ensure_directories()
    removed = 0
    cutoff = time.time() - max_age_seconds

    for temp_file in SITES_ROOT.rglob(f"*{TEMP_SUFFIX}"):
        try:
            if temp_file.stat().st_mtime < cutoff:
                temp_file.unlink()
                removed += 1
                logger.info("temp_file_removed path=%s", temp_file)
        except OSError as error:
            logger.warning(
                "temp_cleanup_failed path=%s error=%s",
                temp_file,
                error,
            )
    return removed


# --- Access log and statistics ----------------------------------------------


def site_name_for_host(host: str) -> Optional[str]:
    host = (host or "").strip().lower().split(":", 1)[0]
    suffix = f".{DOMAIN}"
    if not host.endswith(suffix):
        return None
    name = host[: -len(suffix)]
    return name or None


def record_access(site_name: str, ip: Optional[str], path: str, status: int,
                  timestamp: Optional[float] = None) -> bool:
    with get_db() as conn:
        row = conn.execute("SELECT id FROM sites WHERE name = ?", (site_name,)).fetchone()
        if not row:
            return False
        conn.execute(
            "INSERT INTO access_log (site_id, ip, path, status, timestamp) VALUES (?, ?, ?, ?, ?)",
            (row["id"], ip, path, int(status), timestamp or time.time()),
        )
        conn.commit()
    return True


def ingest_access_log(log_path: Optional[Path] = None) -> int:
    """Import new entries from the proxy's JSON access log.

    Progress is stored per file in ``ingest_offsets``; a shrunk or replaced
    file (log rotation) is read again from the start. Only complete lines are
    consumed so a partially flushed entry is picked up on the next run.
    """

    log_path = Path(log_path or ACCESS_LOG_PATH or "")
    if not log_path or not log_path.is_file():
        return 0

    stat = log_path.stat()
    with get_db() as conn:
        row = conn.execute(
            "SELECT inode, position FROM ingest_offsets WHERE path = ?", (str(log_path),)
        ).fetchone()
    offset = 0
    if row and row["inode"] == stat.st_ino and row["position"] <= stat.st_size:
        offset = int(row["position"])

    imported = 0
    with log_path.open("rb") as handle:
        handle.seek(offset)
        for raw_line in handle:
            if not raw_line.endswith(b"\n"):
                break
            offset += len(raw_line)
            try:
                entry = json.loads(raw_line)
            except ValueError:
                continue
            request_info = entry.get("request") if isinstance(entry, dict) else None
            if not isinstance(request_info, dict):
                continue
            site_name = site_name_for_host(str(request_info.get("host", "")))
            if not site_name:
                continue
            try:
                status = int(entry.get("status", 0))
                timestamp = float(entry.get("ts", time.time()))
            except (TypeError, ValueError):
                continue
            uri = str(request_info.get("uri", "/")).split("?", 1)[0]
            if record_access(site_name, request_info.get("remote_ip"), uri, status, timestamp):
                imported += 1

    with get_db() as conn:
        conn.execute(
            """
            INSERT INTO ingest_offsets (path, inode, position) VALUES (?, ?, ?)
            ON CONFLICT(path) DO UPDATE SET inode = excluded.inode, position = excluded.position
            """,
            (str(log_path), stat.st_ino, offset),
        )
        conn.commit()

    if imported:
        logger.info("access_log_ingested path=%s entries=%d", log_path, imported)
    return imported


def get_global_stats() -> Dict[str, int]:
    """Return aggregate metrics across every site."""

    with get_db() as conn:
        row = conn.execute(
            """
            SELECT
                (SELECT COUNT(*) FROM sites) AS total_sites,
                (SELECT COUNT(*) FROM access_log) AS total_requests
            """
        ).fetchone()

    total_files = 0
    total_size = 0
    for site in list_sites():
        for entry in iter_site_files(Path(site["path"])):
            total_files += 1
            total_size += int(entry["size"])

    return {
        "total_sites": int(row["total_sites"] or 0),
        "total_files": total_files,
        "total_size": total_size,
        "total_requests": int(row["total_requests"] or 0),
    }


def get_site_request_stats(site_id: int, top_limit: int = 10) -> Dict[str, object]:
    with get_db() as conn:
        count_row = conn.execute(
            "SELECT COUNT(*) AS requests FROM access_log WHERE site_id = ?", (site_id,)
        ).fetchone()
        top_paths = conn.execute(
            """
            SELECT path, COUNT(*) AS count
            FROM access_log
            WHERE site_id = ?
            GROUP BY path
            ORDER BY count DESC, path ASC
            LIMIT ?
            """,
            (site_id, top_limit),
        ).fetchall()
    return {
        "requests": int(count_row["requests"] or 0),
        "recent_paths": [{"path": row["path"], "count": int(row["count"])} for row in top_paths],
    }


logger = logging.getLogger("sitehost.storage")

ensure_directories()
init_db()
