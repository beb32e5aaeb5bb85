"""Request admission for tenant file operations.

Every upload passes the same gates in a fixed order: rate limit, site lookup,
path confinement, size limit, then a quota reservation. Only after all of
them pass is anything written, and the write goes to a temporary sibling that
is renamed over the target once complete. A failed write cancels the
reservation, so the quota ledger only ever counts bytes that reached the disk.
"""

import os
import posixpath
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Any, BinaryIO, Dict, Optional

from .errors import (
    FileExists,
    FileNotFound,
    FileTooLarge,
    InvalidRequest,
    PathRejected,
    QuotaExceeded,
    RateLimited,
    SiteNotFound,
    StorageIOFailed,
)
from .logs import get_logger, sanitize_log_value
from .quota import QuotaLedger, UnknownSiteError
from .rate_limit import RateLimitDecision, SlidingWindowRateLimiter
from .safe_path import confine

logger = get_logger("sitehost.lifecycle")

ROOT_PATH_REASON = "Path refers to the site root"
RESERVED_NAME_REASON = "Path uses a name reserved for in-progress uploads"


def measure_stream(stream: BinaryIO) -> Optional[int]:
    """Return the bytes left in a seekable *stream*, or ``None`` if it cannot seek."""

    try:
        position = stream.tell()
        stream.seek(0, os.SEEK_END)
        end = stream.tell()
        stream.seek(position)
    except (AttributeError, OSError, ValueError):
        return None
    return max(0, end - position)


class AdmissionPipeline:
    def __init__(
        self,
        registry: Any,
        ledger: QuotaLedger,
        limiter: SlidingWindowRateLimiter,
        max_file_bytes: int,
        domain: str,
        chunk_size: int = 1024 * 1024,
        temp_suffix: str = ".tmp",
    ) -> None:
        self.registry = registry
        self.ledger = ledger
        self.limiter = limiter
        self.max_file_bytes = int(max_file_bytes)
        self.domain = domain
        self.chunk_size = int(chunk_size)
        self.temp_suffix = temp_suffix

    def admit_request(self, identity: str) -> RateLimitDecision:
        """Count one request for *identity*; raises :class:`RateLimited` when over."""

        decision = self.limiter.admit(identity)
        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded identity=%s retry_after=%s",
                sanitize_log_value(identity),
                decision.retry_after,
            )
            raise RateLimited(decision.retry_after or 1, decision.headers())
        return decision

    def _site_root(self, site_name: str) -> Path:
        site = self.registry.get_site(site_name)
        if site is None:
            raise SiteNotFound(site_name)
        return Path(site["path"])

    def _confine(self, root: Path, relative_path: str) -> Path:
        target, reason = confine(root, relative_path)
        if target is None:
            logger.warning(
                "path_rejected root=%s path=%s reason=%s",
                root,
                sanitize_log_value(relative_path),
                reason,
            )
            raise PathRejected(reason=reason)
        absolute_root = Path(os.path.abspath(root))
        if target == absolute_root:
            raise PathRejected(reason=ROOT_PATH_REASON)
        # Names with the staging suffix are invisible to recounts and get swept.
        if any(part.endswith(self.temp_suffix) for part in target.relative_to(absolute_root).parts):
            logger.warning(
                "path_rejected root=%s path=%s reason=reserved_suffix",
                root,
                sanitize_log_value(relative_path),
            )
            raise PathRejected(reason=RESERVED_NAME_REASON)
        return target

    def _check_parents(self, target: Path, root: Path) -> None:
        root = Path(os.path.abspath(root))
        for parent in target.parents:
            if parent == root:
                break
            if parent.exists() and not parent.is_dir():
                raise FileExists(parent.relative_to(root).as_posix())

    def upload(
        self,
        site_name: str,
        sub_path: Optional[str],
        filename: Optional[str],
        stream: BinaryIO,
        overwrite: bool = False,
    ) -> Dict[str, Any]:
        root = self._site_root(site_name)

        filename = (filename or "").strip()
        if not filename:
            raise InvalidRequest("No file provided")
        relative_path = posixpath.join((sub_path or "").replace("\\", "/"), filename)
        target = self._confine(root, relative_path)
        relative_path = target.relative_to(os.path.abspath(root)).as_posix()

        if target.is_dir():
            raise FileExists(relative_path)
        self._check_parents(target, root)

        replacing = target.exists()
        replaced_bytes = 0
        if replacing:
            if not overwrite:
                raise FileExists(relative_path)
            replaced_bytes = target.stat().st_size

        spooled = None
        size = measure_stream(stream)
        if size is None:
            spooled = tempfile.SpooledTemporaryFile(max_size=self.chunk_size)
            shutil.copyfileobj(stream, spooled, self.chunk_size)
            size = spooled.tell()
            spooled.seek(0)
            stream = spooled

        try:
            if size > self.max_file_bytes:
                raise FileTooLarge(self.max_file_bytes)

            try:
                reservation = self.ledger.reserve(site_name, size, replaced_bytes)
            except UnknownSiteError:
                raise SiteNotFound(site_name)
            if not reservation.granted:
                raise QuotaExceeded(reservation.used_bytes, reservation.quota_bytes, size)

            try:
                written = self._write_atomic(target, root, stream)
            except OSError as error:
                self.ledger.cancel(reservation)
                logger.error(
                    "upload_write_failed site=%s path=%s error=%s",
                    site_name,
                    sanitize_log_value(relative_path),
                    error,
                )
                raise StorageIOFailed("Failed to store uploaded file") from error
            except Exception:
                self.ledger.cancel(reservation)
                raise
        finally:
            if spooled is not None:
                spooled.close()

        used_bytes = self.ledger.commit(reservation, written)
        logger.info(
            "file_uploaded site=%s path=%s size=%d overwrite=%s",
            site_name,
            sanitize_log_value(relative_path),
            written,
            replacing,
        )
        return {
            "success": True,
            "path": relative_path,
            "size": written,
            "url": f"https://{site_name}.{self.domain}/{relative_path}",
            "used_bytes": used_bytes,
            "quota_bytes": reservation.quota_bytes,
        }

    def _write_atomic(self, target: Path, root: Path, stream: BinaryIO) -> int:
        temp_path = target.with_name(f".{target.name}.{uuid.uuid4().hex}{self.temp_suffix}")
        written = 0
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with temp_path.open("wb") as handle:
                while True:
                    chunk = stream.read(self.chunk_size)
                    if not chunk:
                        break
                    handle.write(chunk)
                    written += len(chunk)
            os.replace(temp_path, target)
        except BaseException:
            try:
                temp_path.unlink()
            except FileNotFoundError:
                pass
            except OSError as cleanup_error:
                logger.warning("temp_file_cleanup_failed path=%s error=%s", temp_path, cleanup_error)
            self.registry.prune_empty_dirs(target.parent, Path(os.path.abspath(root)))
            raise
        return written

    def delete(self, site_name: str, relative_path: Optional[str]) -> Dict[str, Any]:
        root = self._site_root(site_name)
        target = self._confine(root, relative_path or "")

        if not target.is_file():
            raise FileNotFound(relative_path or "")
        try:
            size = target.stat().st_size
            target.unlink()
        except FileNotFoundError:
            raise FileNotFound(relative_path or "")
        except OSError as error:
            logger.error(
                "file_delete_failed site=%s path=%s error=%s",
                site_name,
                sanitize_log_value(relative_path),
                error,
            )
            raise StorageIOFailed("Failed to delete file") from error

        used_bytes = self.ledger.release(site_name, size)
        self.registry.prune_empty_dirs(target.parent, Path(os.path.abspath(root)))
        logger.info(
            "file_deleted site=%s path=%s size=%d",
            site_name,
            sanitize_log_value(relative_path),
            size,
        )
        return {
            "success": True,
            "message": f"Deleted {relative_path}",
            "used_bytes": used_bytes,
        }
