#!/usr/bin/env python3
"""
Smoke test for a running SiteHost deployment.

Usage: SITEHOST_URL=http://localhost:3000 SITEHOST_API_KEY=sk_... python smoke_test.py
"""

import os
import sys
import time
from io import BytesIO

import requests

BASE_URL = os.environ.get("SITEHOST_URL", "http://localhost:3000").rstrip("/")
API_KEY = os.environ.get("SITEHOST_API_KEY", "")
HEADERS = {"X-API-Key": API_KEY}
SITE_NAME = f"smoke-{int(time.time())}"
test_results = []


class TestResult:
    def __init__(self, endpoint, method, status, message):
        self.endpoint = endpoint
        self.method = method
        self.status = status
        self.message = message

    def __str__(self):
        status_symbol = "✓" if self.status == "PASS" else "✗" if self.status == "FAIL" else "!"
        return f"[{status_symbol}] {self.method} {self.endpoint}: {self.message}"


def log_test(endpoint, method, status, message):
    result = TestResult(endpoint, method, status, message)
    test_results.append(result)
    print(result)


def expect(response, endpoint, method, status_code, message):
    if response.status_code == status_code:
        log_test(endpoint, method, "PASS", message)
        return True
    log_test(
        endpoint,
        method,
        "FAIL",
        f"Expected {status_code}, got {response.status_code}: {response.text[:200]}",
    )
    return False


def test_health_endpoint():
    print("\n=== Health ===")
    response = requests.get(f"{BASE_URL}/health", timeout=5)
    if response.status_code == 200:
        log_test("/health", "GET", "PASS", "Health check passed")
    else:
        log_test("/health", "GET", "WARN", f"Unhealthy: {response.text[:200]}")


def test_authentication():
    print("\n=== Authentication ===")
    response = requests.get(f"{BASE_URL}/sites", timeout=5)
    expect(response, "/sites", "GET", 401, "Missing API key rejected")
    if "X-RateLimit-Limit" in response.headers:
        log_test("/sites", "GET", "PASS", "Rate-limit headers present on rejected request")
    else:
        log_test("/sites", "GET", "FAIL", "Rate-limit headers missing")


def test_site_lifecycle():
    print("\n=== Site lifecycle ===")
    response = requests.post(
        f"{BASE_URL}/sites", json={"name": SITE_NAME}, headers=HEADERS, timeout=15
    )
    if not expect(response, "/sites", "POST", 201, f"Created {SITE_NAME}"):
        return False

    files = {"file": ("index.html", BytesIO(b"<h1>smoke</h1>"), "text/html")}
    response = requests.post(
        f"{BASE_URL}/sites/{SITE_NAME}/files", files=files, headers=HEADERS, timeout=15
    )
    expect(response, f"/sites/{SITE_NAME}/files", "POST", 201, "Uploaded index.html")

    files = {"file": ("index.html", BytesIO(b"again"), "text/html")}
    response = requests.post(
        f"{BASE_URL}/sites/{SITE_NAME}/files", files=files, headers=HEADERS, timeout=15
    )
    expect(response, f"/sites/{SITE_NAME}/files", "POST", 409, "Overwrite requires flag")

    files = {"file": ("evil.txt", BytesIO(b"x"), "text/plain")}
    response = requests.post(
        f"{BASE_URL}/sites/{SITE_NAME}/files",
        params={"path": "../../etc"},
        files=files,
        headers=HEADERS,
        timeout=15,
    )
    expect(response, f"/sites/{SITE_NAME}/files", "POST", 400, "Traversal rejected")

    response = requests.get(f"{BASE_URL}/stats/{SITE_NAME}", headers=HEADERS, timeout=5)
    expect(response, f"/stats/{SITE_NAME}", "GET", 200, "Site stats returned")

    response = requests.delete(
        f"{BASE_URL}/sites/{SITE_NAME}/files/index.html", headers=HEADERS, timeout=15
    )
    expect(response, f"/sites/{SITE_NAME}/files/index.html", "DELETE", 200, "Deleted file")
    return True


def test_proxy_sync():
    print("\n=== Proxy sync ===")
    response = requests.post(f"{BASE_URL}/sync", headers=HEADERS, timeout=30)
    expect(response, "/sync", "POST", 200, "Routes reconciled with registry")


def cleanup():
    print("\n=== Cleanup ===")
    response = requests.delete(f"{BASE_URL}/sites/{SITE_NAME}", headers=HEADERS, timeout=15)
    expect(response, f"/sites/{SITE_NAME}", "DELETE", 200, "Deleted site")


def main():
    if not API_KEY:
        print("Set SITEHOST_API_KEY (create one with: python -m sitehost create-key smoke)")
        return 1

    print(f"Base URL: {BASE_URL}")
    try:
        test_health_endpoint()
        test_authentication()
        if test_site_lifecycle():
            test_proxy_sync()
            cleanup()
    except requests.RequestException as error:
        log_test(BASE_URL, "-", "FAIL", f"Server unreachable: {error}")

    failed = [r for r in test_results if r.status == "FAIL"]
    print("\n" + "=" * 60)
    print(f"{len(test_results) - len(failed)} passed, {len(failed)} failed")
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
