import logging
import os
import re
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import InvalidRequest, PathRejected, SiteExists, SiteNotFound, StorageIOFailed
from .proxy import BCRYPT_MAX_PASSWORD_BYTES, ProxySynchronizer, SyncResult, hash_basic_auth_password
from .quota import QuotaLedger
from .safe_path import confine
from .locks import KeyedLocks
from .logs import get_logger, sanitize_log_value

SITE_NAME_PATTERN = re.compile(r"^[a-z0-9-]+$")
MAX_SITE_NAME_LENGTH = 63
PASSWORD_MIN_LENGTH = 8

# Distinguishes "leave auth alone" from "remove auth" (None) in updates.
UNSET: Any = object()

lifecycle_logger = get_logger("sitehost.lifecycle")


def isoformat_utc(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace(
        "+00:00", "Z"
    )


def site_url(name: str, domain: str) -> str:
    return f"https://{name}.{domain}"


def validate_site_name(name: Any) -> Tuple[bool, Optional[str]]:
    """Validate a site name for use as a subdomain label and directory name."""

    if not isinstance(name, str) or not name:
        return False, "Site name is required"
    if len(name) > MAX_SITE_NAME_LENGTH:
        return False, f"Site name exceeds maximum length of {MAX_SITE_NAME_LENGTH} characters"
    if not SITE_NAME_PATTERN.match(name):
        return False, "Site name must be lowercase alphanumeric and hyphens only"
    return True, None


def parse_auth(payload: Any) -> Optional[Tuple[str, str]]:
    """Turn an ``{"user", "pass"}`` object into a ``(user, bcrypt_hash)`` pair."""

    if payload is None:
        return None
    if not isinstance(payload, dict):
        raise InvalidRequest("auth must be an object with user and pass")
    user = payload.get("user")
    password = payload.get("pass")
    if not isinstance(user, str) or not user.strip():
        raise InvalidRequest("auth.user is required")
    if ":" in user:
        raise InvalidRequest("auth.user must not contain ':'")
    if not isinstance(password, str) or len(password) < PASSWORD_MIN_LENGTH:
        raise InvalidRequest(f"auth.pass must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(password.encode("utf-8")) > BCRYPT_MAX_PASSWORD_BYTES:
        raise InvalidRequest(f"auth.pass must be at most {BCRYPT_MAX_PASSWORD_BYTES} bytes")
    return user.strip(), hash_basic_auth_password(password)


def site_to_dict(site: Mapping[str, Any], domain: str) -> Dict[str, Any]:
    return {
        "id": site["id"],
        "name": site["name"],
        "path": site["path"],
        "auth_user": site["auth_user"],
        "quota_bytes": int(site["quota_bytes"]),
        "used_bytes": int(site["used_bytes"]),
        "created_at": isoformat_utc(float(site["created_at"])),
        "url": site_url(site["name"], domain),
    }


class SiteManager:
    """Provision, reconfigure and remove sites without leaving drift behind.

    A site exists in the registry only while Caddy has a route for it: creation
    rolls back the directory and row when the proxy refuses the route, and
    deletion stops before touching the registry when the route cannot be
    removed.
    """

    def __init__(
        self,
        registry: Any,
        synchronizer: ProxySynchronizer,
        ledger: QuotaLedger,
        sites_root: Path,
        domain: str,
    ) -> None:
        self.registry = registry
        self.synchronizer = synchronizer
        self.ledger = ledger
        self.sites_root = Path(sites_root)
        self.domain = domain
        self._locks = KeyedLocks()

    def get_site(self, name: str):
        site = self.registry.get_site(name)
        if site is None:
            raise SiteNotFound(name)
        return site

    def create_site(
        self,
        name: str,
        auth: Optional[Tuple[str, str]] = None,
        quota_bytes: Optional[int] = None,
    ):
        is_valid, error = validate_site_name(name)
        if not is_valid:
            raise InvalidRequest(error or "Invalid site name")

        auth_user, auth_hash = auth if auth else (None, None)
        with self._locks.hold(name):
            if self.registry.get_site(name) is not None:
                raise SiteExists(name)

            site_path, reason = confine(self.sites_root, name)
            if site_path is None or site_path == Path(os.path.abspath(self.sites_root)):
                raise PathRejected(reason=reason)

            created_dir = not site_path.exists()
            try:
                site_path.mkdir(parents=True, exist_ok=True)
                if not created_dir:
                    # Keep the orphan sweep off a directory this create adopts.
                    os.utime(site_path)
            except OSError as error:
                lifecycle_logger.error("site_dir_create_failed site=%s error=%s", name, error)
                raise StorageIOFailed("Failed to create site directory") from error

            try:
                site = self.registry.create_site(
                    name, site_path, auth_user, auth_hash, quota_bytes
                )
            except sqlite3.IntegrityError:
                if created_dir:
                    self._remove_directory(name, site_path)
                raise SiteExists(name)

            try:
                self.synchronizer.add_site(site)
            except Exception:
                self._rollback_create(name, site_path, created_dir)
                raise

            if not created_dir:
                # Adopt whatever an earlier, half-finished deletion left behind.
                self.ledger.reconcile(name, self.registry.directory_size(site_path))

        lifecycle_logger.info(
            "site_created site=%s auth=%s quota_bytes=%s",
            name,
            bool(auth_user),
            site["quota_bytes"],
        )
        return self.registry.get_site(name) or site

    def _remove_directory(self, name: str, site_path: Path) -> bool:
        try:
            self.registry.remove_site_directory(site_path)
            return True
        except OSError as error:
            lifecycle_logger.error(
                "site_dir_remove_failed site=%s path=%s error=%s", name, site_path, error
            )
            return False

    def _rollback_create(self, name: str, site_path: Path, created_dir: bool) -> None:
        try:
            self.registry.delete_site(name)
        except Exception:
            lifecycle_logger.exception("site_rollback_failed step=registry site=%s", name)
        if created_dir:
            self._remove_directory(name, site_path)
        self.ledger.forget(name)
        lifecycle_logger.warning("site_create_rolled_back site=%s", name)

    def delete_site(self, name: str) -> None:
        with self._locks.hold(name):
            site = self.get_site(name)
            self.synchronizer.remove_site(name)
            try:
                self.registry.delete_site(name)
            except Exception:
                lifecycle_logger.exception("site_delete_failed step=registry site=%s", name)
                try:
                    self.synchronizer.add_site(site)
                except Exception:
                    lifecycle_logger.exception("site_delete_rollback_failed site=%s", name)
                raise
            self.ledger.forget(name)
            if not self._remove_directory(name, Path(site["path"])):
                lifecycle_logger.warning(
                    "site_dir_left_behind site=%s path=%s", name, site["path"]
                )
        lifecycle_logger.info("site_deleted site=%s", name)

    def update_site(self, name: str, auth: Any = UNSET, quota_bytes: Optional[int] = None):
        with self._locks.hold(name):
            site = self.get_site(name)

            if auth is not UNSET:
                auth_user, auth_hash = auth if auth else (None, None)
                candidate = dict(site)
                candidate.update({"auth_user": auth_user, "auth_hash": auth_hash})
                self.synchronizer.update_site(candidate)
                try:
                    site = self.registry.update_site_auth(name, auth_user, auth_hash)
                except Exception:
                    lifecycle_logger.exception("site_auth_update_failed site=%s", name)
                    try:
                        self.synchronizer.update_site(dict(self.get_site(name)))
                    except Exception:
                        lifecycle_logger.exception("site_auth_rollback_failed site=%s", name)
                    raise
                lifecycle_logger.info(
                    "site_auth_updated site=%s auth=%s", name, bool(auth_user)
                )

            if quota_bytes is not None:
                if quota_bytes < 0:
                    raise InvalidRequest("quota must not be negative")
                site = self.registry.update_site_quota(name, quota_bytes)
                lifecycle_logger.info("site_quota_updated site=%s quota_bytes=%d", name, quota_bytes)

        return site

    def list_files(self, name: str) -> List[Dict[str, Any]]:
        site = self.get_site(name)
        return [
            dict(entry, modified=isoformat_utc(float(entry["modified"])))
            for entry in self.registry.iter_site_files(Path(site["path"]))
        ]

    def site_stats(self, name: str) -> Dict[str, Any]:
        site = self.get_site(name)
        files = list(self.registry.iter_site_files(Path(site["path"])))
        request_stats = self.registry.get_site_request_stats(site["id"])
        usage = self.ledger.usage(name)
        return {
            "site": name,
            "files": len(files),
            "size": sum(int(entry["size"]) for entry in files),
            "requests": request_stats["requests"],
            "recent_paths": request_stats["recent_paths"],
            "quota_bytes": usage["quota_bytes"],
            "used_bytes": usage["used_bytes"],
            "pending_bytes": usage["pending_bytes"],
        }

    def sync_all(self) -> SyncResult:
        result = self.synchronizer.sync()
        if result.applied:
            lifecycle_logger.info("proxy_resync_completed routes=%d", len(result.route_ids))
        else:
            lifecycle_logger.error(
                "proxy_resync_failed errors=%s",
                sanitize_log_value("; ".join(result.errors)),
            )
        return result

    def recount_quotas(self) -> int:
        """Recount every site's bytes on disk; returns how many sites changed."""

        changed = 0
        for site in self.registry.list_sites():
            actual = self.registry.directory_size(Path(site["path"]))
            if int(site["used_bytes"]) != actual:
                if self.ledger.reconcile(site["name"], actual) is not None:
                    changed += 1
        if changed:
            logging.getLogger("sitehost.quota").info("quota_recount_completed changed=%d", changed)
        return changed
