#!/usr/bin/env python3
"""
Smoke test for a running FileVault server.

Logs in as the bootstrap admin, creates a warehouse, uploads a file with the
warehouse API key, and exercises signed URLs and the file access gate.

Usage:
    FILEVAULT_URL=http://localhost:8000 \
    FILEVAULT_ADMIN_EMAIL=admin@example.com FILEVAULT_ADMIN_PASSWORD=... \
    python smoke_test.py
"""

import os
import sys
from io import BytesIO

import requests

BASE_URL = os.environ.get("FILEVAULT_URL", "http://localhost:8000").rstrip("/")
ADMIN_EMAIL = os.environ.get("FILEVAULT_ADMIN_EMAIL", "")
ADMIN_PASSWORD = os.environ.get("FILEVAULT_ADMIN_PASSWORD", "")
test_results = []

# Session-authenticated mutations need a same-origin header
DEFAULT_HEADERS = {
    'Origin': BASE_URL
}


class CheckResult:
    def __init__(self, endpoint, method, status, message, severity="info"):
        self.endpoint = endpoint
        self.method = method
        self.status = status
        self.message = message
        self.severity = severity

    def __str__(self):
        status_symbol = "✓" if self.status == "PASS" else "✗" if self.status == "FAIL" else "!"
        return f"[{status_symbol}] {self.method} {self.endpoint}: {self.message}"


def log_check(endpoint, method, status, message, severity="info"):
    result = CheckResult(endpoint, method, status, message, severity)
    test_results.append(result)
    print(result)


def expect(endpoint, method, response, expected_status, message, severity="error"):
    if response.status_code == expected_status:
        log_check(endpoint, method, "PASS", message)
        return True
    log_check(
        endpoint,
        method,
        "FAIL",
        f"{message}: expected {expected_status}, got {response.status_code} {response.text[:200]}",
        severity,
    )
    return False


def check_health():
    print("\n=== Health ===")
    try:
        response = requests.get(f"{BASE_URL}/health", timeout=5)
        expect("/health", "GET", response, 200, "Health check passed")
    except requests.RequestException as e:
        log_check("/health", "GET", "FAIL", f"Exception: {str(e)}", "error")


def check_login():
    print("\n=== Login ===")
    session = requests.Session()
    if not ADMIN_EMAIL or not ADMIN_PASSWORD:
        log_check("/api/auth/login", "POST", "SKIP", "FILEVAULT_ADMIN_EMAIL/PASSWORD not set")
        return None
    response = session.post(
        f"{BASE_URL}/api/auth/login",
        json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD},
        timeout=10,
    )
    if not expect("/api/auth/login", "POST", response, 200, "Admin login"):
        return None
    return session


def check_create_warehouse(session):
    print("\n=== Warehouse ===")
    response = session.post(
        f"{BASE_URL}/api/admin/warehouses",
        json={"warehouseName": "smoke-test"},
        headers=DEFAULT_HEADERS,
        timeout=10,
    )
    if not expect("/api/admin/warehouses", "POST", response, 201, "Warehouse created"):
        return None
    return response.json()


def check_upload(warehouse):
    print("\n=== Upload ===")
    files = {'file': ('smoke.txt', BytesIO(b'Hello FileVault!'), 'text/plain')}
    response = requests.post(
        f"{BASE_URL}/api/upload",
        files=files,
        data={'warehouseId': warehouse["warehouse"]["id"]},
        headers={'X-API-Key': warehouse["apiKey"]},
        timeout=10,
    )
    if not expect("/api/upload", "POST", response, 201, "File uploaded with API key"):
        return None
    return response.json()["files"][0]


def check_access_gate(session, warehouse, uploaded):
    print("\n=== File access ===")
    file_url = f"{BASE_URL}{uploaded['url']}"
    expect(uploaded["url"], "GET", requests.get(file_url, timeout=10), 401,
           "Anonymous fetch requires authentication", "critical")
    expect(uploaded["url"], "GET",
           requests.get(file_url, headers={'X-API-Key': warehouse["apiKey"]}, timeout=10),
           200, "API key fetch")

    response = session.post(
        f"{BASE_URL}/api/signed-url",
        json={"warehouseId": uploaded["warehouseId"], "filename": uploaded["filename"], "ttlSeconds": 60},
        timeout=10,
    )
    if not expect("/api/signed-url", "POST", response, 200, "Signed URL issued"):
        return
    capability_url = response.json()["capabilityUrl"]

    anonymous = requests.get(f"{BASE_URL}{capability_url}", timeout=10)
    if expect(capability_url, "GET", anonymous, 200, "Anonymous fetch with signed URL"):
        if anonymous.content != b'Hello FileVault!':
            log_check(capability_url, "GET", "FAIL", "Signed URL served wrong content", "error")

    tampered = capability_url[:-1] + ("0" if capability_url[-1] != "0" else "1")
    expect(capability_url, "GET", requests.get(f"{BASE_URL}{tampered}", timeout=10), 403,
           "Tampered signature rejected", "critical")


def check_cleanup(session, warehouse):
    print("\n=== Cleanup ===")
    warehouse_id = warehouse["warehouse"]["id"]
    response = session.delete(
        f"{BASE_URL}/api/admin/warehouses/{warehouse_id}",
        headers=DEFAULT_HEADERS,
        timeout=10,
    )
    expect(f"/api/admin/warehouses/{warehouse_id}", "DELETE", response, 200, "Warehouse deleted")


def print_summary():
    print("\n" + "="*80)
    print("SMOKE TEST SUMMARY")
    print("="*80)

    passed = sum(1 for r in test_results if r.status == "PASS")
    failed = sum(1 for r in test_results if r.status == "FAIL")
    skipped = sum(1 for r in test_results if r.status == "SKIP")

    print(f"\nTotal Checks: {len(test_results)}")
    print(f"Passed: {passed}")
    print(f"Failed: {failed}")
    print(f"Skipped: {skipped}")

    errors = [r for r in test_results if r.status == "FAIL"]
    if errors:
        print("\nFAILED CHECKS:")
        for r in errors:
            print(f"  - {r.method} {r.endpoint}: {r.message}")


def main():
    print("Starting FileVault smoke test...")
    print(f"Base URL: {BASE_URL}")
    print("="*80)

    check_health()
    session = check_login()
    if session is not None:
        warehouse = check_create_warehouse(session)
        if warehouse is not None:
            uploaded = check_upload(warehouse)
            if uploaded is not None:
                check_access_gate(session, warehouse, uploaded)
            check_cleanup(session, warehouse)

    print_summary()

    failed = sum(1 for r in test_results if r.status == "FAIL")
    critical = sum(1 for r in test_results if r.severity == "critical" and r.status == "FAIL")
    if critical > 0:
        print("\n⚠️  CRITICAL ACCESS CONTROL FAILURES!")
        return 2
    if failed > 0:
        print("\n⚠️  CHECKS FAILED!")
        return 1
    print("\n✓ All checks passed!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
