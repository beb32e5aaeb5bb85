import atexit
import ipaddress
import logging
import os
import shutil
import time
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from apscheduler.schedulers.background import BackgroundScheduler
from flask import Flask, Response, g, jsonify, make_response, request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge

from . import storage
from .errors import FileTooLarge, InvalidRequest, SiteHostError
from .logs import configure_logging, get_logger, sanitize_log_value
from .pipeline import AdmissionPipeline
from .proxy import CaddyAdminClient, build_proxy_synchronizer
from .quota import QuotaLedger
from .rate_limit import SlidingWindowRateLimiter
from .sites import UNSET, SiteManager, parse_auth, site_to_dict
from .storage import (
    BYTES_PER_MB,
    CADDY_ADMIN_URL,
    CADDY_SERVER_NAME,
    CHUNK_SIZE_BYTES,
    DOMAIN,
    LOGS_DIR,
    MAX_FILE_SIZE_MB,
    PROXY_RESYNC_MINUTES,
    PROXY_SYNC_MODE,
    PROXY_TIMEOUT_SECONDS,
    RATE_LIMIT_COMPACT_MINUTES,
    RATE_LIMIT_MAX_REQUESTS,
    RATE_LIMIT_WINDOW_MS,
    SCHEDULER_ENABLED,
    SITES_ROOT,
    TEMP_SUFFIX,
    TRUSTED_PROXIES,
    ensure_directories,
    get_db,
)

LOG_PATH = configure_logging(LOGS_DIR)
logger = logging.getLogger("sitehost")
lifecycle_logger = get_logger("sitehost.lifecycle")

# Multipart framing on top of the largest allowed file.
UPLOAD_OVERHEAD_BYTES = 1024 * 1024
PUBLIC_ENDPOINTS = {"health_check"}
TRUE_VALUES = {"1", "true", "yes", "on"}


class AmbiguousAPIKeyError(Exception):
    """Raised when a request carries more than one distinct API key."""


def _parse_trusted_proxies(entries: List[str]) -> List[Union[ipaddress.IPv4Network, ipaddress.IPv6Network]]:
    networks = []
    for entry in entries:
        try:
            networks.append(ipaddress.ip_network(entry, strict=False))
        except ValueError:
            logger.warning("trusted_proxy_invalid entry=%s", sanitize_log_value(entry))
    return networks


TRUSTED_PROXY_NETWORKS = _parse_trusted_proxies(TRUSTED_PROXIES)

rate_limiter = SlidingWindowRateLimiter(RATE_LIMIT_MAX_REQUESTS, RATE_LIMIT_WINDOW_MS)
ledger = QuotaLedger(storage)
proxy_client = CaddyAdminClient(
    CADDY_ADMIN_URL, CADDY_SERVER_NAME, timeout=float(PROXY_TIMEOUT_SECONDS)
)
synchronizer = build_proxy_synchronizer(
    PROXY_SYNC_MODE, proxy_client, DOMAIN, list_sites=storage.list_sites
)
site_manager = SiteManager(storage, synchronizer, ledger, SITES_ROOT, DOMAIN)
pipeline = AdmissionPipeline(
    storage,
    ledger,
    rate_limiter,
    MAX_FILE_SIZE_MB * BYTES_PER_MB,
    DOMAIN,
    chunk_size=CHUNK_SIZE_BYTES,
    temp_suffix=TEMP_SUFFIX,
)

app = Flask(__name__, static_folder=None)
app.config["MAX_CONTENT_LENGTH"] = MAX_FILE_SIZE_MB * BYTES_PER_MB + UPLOAD_OVERHEAD_BYTES
app.logger.setLevel(logging.getLogger().level)

limiter = Limiter(
    app=app,
    key_func=get_remote_address,
    default_limits=[],
    storage_uri=os.environ.get("SITEHOST_HEALTH_LIMIT_STORAGE", "memory://"),
)


# --- Identity and authentication --------------------------------------------


def _peer_is_trusted(address: Optional[str]) -> bool:
    if not address or not TRUSTED_PROXY_NETWORKS:
        return False
    try:
        peer = ipaddress.ip_address(address)
    except ValueError:
        return False
    return any(peer in network for network in TRUSTED_PROXY_NETWORKS)


def client_address() -> str:
    """Return the originating address, honouring forwarded headers from trusted proxies only."""

    peer = request.remote_addr or "unknown"
    if _peer_is_trusted(peer):
        forwarded = request.headers.get("X-Forwarded-For", "")
        candidate = forwarded.split(",")[0].strip() if forwarded else ""
        if not candidate:
            candidate = request.headers.get("X-Real-IP", "").strip()
        if candidate:
            return candidate
    return peer


def _extract_api_key_from_request() -> Optional[str]:
    candidates: List[str] = []

    header_key = request.headers.get("X-API-Key")
    if header_key:
        candidates.append(header_key.strip())

    authorization = request.headers.get("Authorization", "").strip()
    if authorization.lower().startswith("bearer "):
        candidates.append(authorization[7:].strip())

    unique = {candidate for candidate in candidates if candidate}
    if len(unique) > 1:
        raise AmbiguousAPIKeyError("Multiple API keys provided")
    return next(iter(unique)) if unique else None


def _api_auth_error() -> Response:
    return make_response(jsonify({"error": "API authentication required."}), 401)


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    g.rate_limit = None
    g.api_key_id = None


@app.before_request
def admit_request() -> Optional[Response]:
    """Rate-limit, then authenticate, every API request.

    The limiter runs before the credential check so failed attempts still
    count against the caller's address.
    """

    if request.endpoint in PUBLIC_ENDPOINTS:
        return None

    ambiguous = False
    key_row = None
    try:
        provided = _extract_api_key_from_request()
    except AmbiguousAPIKeyError:
        ambiguous = True
        provided = None
    if provided:
        key_row = storage.get_api_key(provided)

    identity = f"key:{key_row['id']}" if key_row else f"ip:{client_address()}"
    g.rate_limit = pipeline.admit_request(identity)

    if ambiguous:
        lifecycle_logger.warning(
            "api_auth_ambiguous_keys endpoint=%s method=%s", request.endpoint, request.method
        )
        raise InvalidRequest("Multiple API keys provided")
    if key_row is None:
        lifecycle_logger.warning(
            "api_auth_failed endpoint=%s method=%s", request.endpoint, request.method
        )
        return _api_auth_error()

    g.api_key_id = key_row["id"]
    return None


@app.after_request
def add_rate_limit_headers(response: Response):
    decision = getattr(g, "rate_limit", None)
    if decision is not None:
        for header, value in decision.headers().items():
            response.headers[header] = value
    return response


@app.after_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    if response.status_code >= 500:
        level = logging.ERROR
    elif response.status_code >= 400:
        level = logging.WARNING
    else:
        level = logging.INFO
    lifecycle_logger.log(
        level,
        "request_completed method=%s path=%s status=%d key=%s",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
        getattr(g, "api_key_id", None),
    )
    return response


@app.after_request
def add_security_headers(response: Response):
    """Attach security-focused response headers."""

    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "no-referrer"
    response.headers["Cache-Control"] = "no-store"
    return response


@app.after_request
def add_request_id_header(response: Response):
    """Expose the current request identifier to clients."""

    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


# --- Error mapping ------------------------------------------------------------


@app.errorhandler(SiteHostError)
def handle_site_host_error(error: SiteHostError):
    response = jsonify(error.to_payload())
    response.status_code = error.status_code
    for header, value in getattr(error, "headers", {}).items():
        response.headers[header] = value
    return response


@app.errorhandler(RequestEntityTooLarge)
def handle_file_too_large(error):  # pragma: no cover - framework hook
    return handle_site_host_error(FileTooLarge(MAX_FILE_SIZE_MB * BYTES_PER_MB))


@app.errorhandler(429)
def handle_rate_limit(error):  # pragma: no cover - framework hook
    description = getattr(error, "description", "Too many requests")
    return jsonify({"error": "Rate limit exceeded", "message": str(description)}), 429


@app.errorhandler(HTTPException)
def handle_http_error(error: HTTPException):
    return jsonify({"error": error.description or error.name}), error.code or 500


@app.errorhandler(Exception)
def handle_unexpected_error(error: Exception):
    lifecycle_logger.exception(
        "request_failed method=%s path=%s", request.method, sanitize_log_value(request.path)
    )
    return jsonify({"error": "Internal server error"}), 500


# --- Request parsing helpers ----------------------------------------------------


def _json_object() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise InvalidRequest("Request body must be a JSON object")
    return payload


def _quota_bytes(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise InvalidRequest("quota_mb must be a positive number")
    return int(value * BYTES_PER_MB)


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in TRUE_VALUES


# --- Sites ---------------------------------------------------------------------


@app.route("/sites", methods=["GET"])
def list_sites():
    return jsonify({"sites": [site_to_dict(site, DOMAIN) for site in storage.list_sites()]})


@app.route("/sites", methods=["POST"])
def create_site():
    payload = _json_object()
    auth = parse_auth(payload.get("auth"))
    quota_bytes = _quota_bytes(payload.get("quota_mb"))
    site = site_manager.create_site(payload.get("name"), auth, quota_bytes)
    return jsonify(site_to_dict(site, DOMAIN)), 201


@app.route("/sites/<name>", methods=["GET"])
def get_site(name: str):
    return jsonify(site_to_dict(site_manager.get_site(name), DOMAIN))


@app.route("/sites/<name>", methods=["PATCH"])
def update_site(name: str):
    payload = _json_object()
    if "auth" not in payload and "quota_mb" not in payload:
        raise InvalidRequest("Nothing to update; provide auth and/or quota_mb")
    auth = parse_auth(payload["auth"]) if "auth" in payload else UNSET
    quota_bytes = _quota_bytes(payload.get("quota_mb"))
    site = site_manager.update_site(name, auth=auth, quota_bytes=quota_bytes)
    return jsonify(site_to_dict(site, DOMAIN))


@app.route("/sites/<name>", methods=["DELETE"])
def delete_site(name: str):
    site_manager.delete_site(name)
    return jsonify({"success": True, "message": f"Deleted {name}"})


# --- Files -----------------------------------------------------------------------


@app.route("/sites/<name>/files", methods=["GET"])
def list_files(name: str):
    return jsonify({"site": name, "files": site_manager.list_files(name)})


@app.route("/sites/<name>/files", methods=["POST"])
def upload_file(name: str):
    upload = request.files.get("file")
    if upload is None or not upload.filename:
        raise InvalidRequest("No file provided")
    try:
        result = pipeline.upload(
            name,
            request.args.get("path", ""),
            upload.filename,
            upload.stream,
            overwrite=_flag(request.args.get("overwrite")),
        )
    finally:
        upload.close()
    return jsonify(result), 201


@app.route("/sites/<name>/files/<path:file_path>", methods=["DELETE"])
def delete_file(name: str, file_path: str):
    return jsonify(pipeline.delete(name, file_path))


# --- Stats and operations ------------------------------------------------------------


@app.route("/stats", methods=["GET"])
def global_stats():
    stats = storage.get_global_stats()
    stats["rate_limiter"] = rate_limiter.stats()
    return jsonify(stats)


@app.route("/stats/<name>", methods=["GET"])
def site_stats(name: str):
    return jsonify(site_manager.site_stats(name))


@app.route("/sync", methods=["POST"])
def sync_proxy():
    result = site_manager.sync_all()
    return jsonify(result.to_payload()), 200 if result.applied else 502


# --- Scheduled jobs ------------------------------------------------------------------


def compact_rate_limits() -> int:
    return rate_limiter.compact()


def recount_quotas() -> int:
    return site_manager.recount_quotas()


def resync_proxy() -> None:
    site_manager.sync_all()


scheduler = None
if SCHEDULER_ENABLED:
    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        func=compact_rate_limits,
        trigger="interval",
        minutes=RATE_LIMIT_COMPACT_MINUTES,
        id="compact_rate_limits",
        name="Drop idle rate-limit windows",
        replace_existing=True,
    )
    scheduler.add_job(
        func=recount_quotas,
        trigger="interval",
        hours=1,
        id="recount_quotas",
        name="Recount site storage usage",
        replace_existing=True,
    )
    scheduler.add_job(
        func=storage.cleanup_orphaned_site_dirs,
        trigger="interval",
        hours=1,
        id="cleanup_orphaned_site_dirs",
        name="Clean up orphaned site directories",
        replace_existing=True,
    )
    scheduler.add_job(
        func=storage.cleanup_temp_files,
        trigger="interval",
        hours=1,
        id="cleanup_temp_files",
        name="Clean up temporary upload files",
        replace_existing=True,
    )
    if storage.ACCESS_LOG_PATH is not None:
        scheduler.add_job(
            func=storage.ingest_access_log,
            trigger="interval",
            minutes=1,
            id="ingest_access_log",
            name="Import proxy access log",
            replace_existing=True,
        )
    scheduler.add_job(
        func=resync_proxy,
        trigger="date",
        run_date=datetime.now(),
        id="initial_proxy_sync",
        name="Push registry routes to the proxy on startup",
        replace_existing=True,
    )
    if PROXY_RESYNC_MINUTES:
        scheduler.add_job(
            func=resync_proxy,
            trigger="interval",
            minutes=PROXY_RESYNC_MINUTES,
            id="resync_proxy",
            name="Reconcile proxy routes with the registry",
            replace_existing=True,
        )
    scheduler.start()
    atexit.register(lambda: scheduler.shutdown(wait=False))


@app.route("/health")
@limiter.limit("60 per minute")
def health_check():
    checks: Dict[str, Any] = {}
    healthy = True

    try:
        with get_db() as conn:
            conn.execute("SELECT 1").fetchone()
            conn.execute("SELECT COUNT(*) FROM sites").fetchone()
        checks["database"] = "ok"
    except Exception as error:
        checks["database"] = f"error: {str(error)[:100]}"
        healthy = False

    try:
        ensure_directories()
        usage = shutil.disk_usage(SITES_ROOT)
        disk_free_gb = usage.free / (1024 ** 3)
        checks["disk_space_gb"] = round(disk_free_gb, 2)
        if disk_free_gb < 1:
            checks["disk_space_status"] = "critical"
            healthy = False
        elif disk_free_gb < 5:
            checks["disk_space_status"] = "warning"
        else:
            checks["disk_space_status"] = "ok"
    except Exception as error:
        checks["disk_space_gb"] = 0
        checks["disk_space_status"] = f"error: {str(error)[:100]}"
        healthy = False

    try:
        probe_file = SITES_ROOT / f".health_check_{uuid.uuid4().hex}"
        probe_file.write_text("health_check", encoding="utf-8")
        probe_file.unlink(missing_ok=True)
        checks["sites_writable"] = "ok"
    except Exception as error:
        checks["sites_writable"] = f"error: {str(error)[:100]}"
        healthy = False

    if scheduler is not None:
        job = scheduler.get_job("recount_quotas")
        checks["scheduler_running"] = bool(scheduler.running)
        checks["quota_recount_next_run"] = (
            job.next_run_time.isoformat() if job and job.next_run_time else None
        )
    else:
        checks["scheduler_running"] = False

    checks["proxy_mode"] = synchronizer.mode
    if synchronizer.check():
        checks["proxy"] = "ok"
    else:
        checks["proxy"] = "unreachable"
        healthy = False

    status = "healthy" if healthy else "unhealthy"
    code = 200 if healthy else 503

    return jsonify(
        {
            "status": status,
            "timestamp": time.time(),
            "checks": checks,
        }
    ), code


if __name__ == "__main__":
    app.run(
        host=os.environ.get("SITEHOST_HOST", "0.0.0.0"),
        port=int(os.environ.get("SITEHOST_PORT", "3000")),
        threaded=True,
        debug=False,
    )
