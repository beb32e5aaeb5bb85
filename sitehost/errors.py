from typing import Any, Dict, List, Optional


class SiteHostError(Exception):
    """Base class for failures that map onto a JSON error response."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.message}


class InvalidRequest(SiteHostError):
    status_code = 400


class PathRejected(SiteHostError):
    status_code = 400

    def __init__(self, message: str = "Invalid path", reason: Optional[str] = None) -> None:
        super().__init__(message)
        self.reason = reason

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        if self.reason:
            payload["reason"] = self.reason
        return payload


class SiteNotFound(SiteHostError):
    status_code = 404

    def __init__(self, name: str) -> None:
        super().__init__("Site not found")
        self.name = name


class FileNotFound(SiteHostError):
    status_code = 404

    def __init__(self, path: str) -> None:
        super().__init__("File not found")
        self.path = path


class SiteExists(SiteHostError):
    status_code = 409

    def __init__(self, name: str) -> None:
        super().__init__("Site already exists")
        self.name = name


class FileExists(SiteHostError):
    status_code = 409

    def __init__(self, path: str) -> None:
        super().__init__("File already exists. Use ?overwrite=true to replace")
        self.path = path


class FileTooLarge(SiteHostError):
    status_code = 413

    def __init__(self, max_bytes: int) -> None:
        super().__init__(f"File too large. Max: {max_bytes // (1024 * 1024)}MB")
        self.max_bytes = max_bytes


class QuotaExceeded(SiteHostError):
    """Raised when an upload would push a site past its storage quota."""

    status_code = 413

    def __init__(self, used_bytes: int, quota_bytes: int, requested_bytes: int = 0) -> None:
        super().__init__("Storage quota exceeded")
        self.used_bytes = used_bytes
        self.quota_bytes = quota_bytes
        self.requested_bytes = requested_bytes

    def to_payload(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "used_bytes": self.used_bytes,
            "quota_bytes": self.quota_bytes,
            "requested_bytes": self.requested_bytes,
        }


class RateLimited(SiteHostError):
    status_code = 429

    def __init__(self, retry_after: int, headers: Optional[Dict[str, str]] = None) -> None:
        super().__init__("Rate limit exceeded")
        self.retry_after = retry_after
        self.headers = dict(headers or {"Retry-After": str(retry_after)})

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.message, "retry_after": self.retry_after}


class StorageIOFailed(SiteHostError):
    status_code = 500


class ProxySyncFailed(SiteHostError):
    """The reverse proxy rejected or never received a routing change."""

    status_code = 502

    def __init__(self, message: str, errors: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        if self.errors:
            payload["errors"] = self.errors
        return payload
