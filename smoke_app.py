#!/usr/bin/env python3
"""
Smoke test script for a running Lead Webhook Gateway.

Start the server first (``python app.py``), then run this script. Set the same
``LANDING_PAGE_WEBHOOK_SECRET`` and ``WEBHOOK_RETRY_API_KEY`` as the server so
signed and admin requests pass.
"""

import json
import os
import sys
import time

import requests

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from tools.security import compute_signature


def _signed_headers(body: bytes):
    headers = {"Content-Type": "application/json", "X-Timestamp": str(int(time.time()))}
    secret = os.getenv("LANDING_PAGE_WEBHOOK_SECRET")
    if secret:
        headers["X-Signature-256"] = f"sha256={compute_signature(body, secret)}"
    return headers


def check_health(base_url):
    """Check the health endpoint."""
    try:
        response = requests.get(f"{base_url}/health", timeout=10)
        if response.status_code == 200:
            print(f"✅ Health check passed: {response.json()}")
            return True
        print(f"❌ Health check failed: {response.status_code}")
        return False
    except requests.exceptions.RequestException as e:
        print(f"❌ Health check error: {e}")
        return False


def check_landing_page_duplicate(base_url):
    """Send the same landing-page lead twice; the second must merge."""
    lead = {
        "email": f"smoke.{int(time.time())}@example.com",
        "firstName": "Smoke",
        "lastName": "Test",
        "phone": "+1 555 010 0199",
        "utm_source": "smoke",
        "utm_campaign": "smoke-test",
    }
    body = json.dumps(lead).encode("utf-8")

    try:
        statuses = []
        for _ in range(2):
            response = requests.post(
                f"{base_url}/webhooks/landing-page", data=body, headers=_signed_headers(body), timeout=30
            )
            if response.status_code != 200:
                print(f"❌ Landing page request failed: {response.status_code} {response.text}")
                return False
            statuses.append(response.json()["results"][0]["status"])

        if statuses == ["created", "duplicate"]:
            print("✅ Landing page lead created, repeat merged as duplicate")
            return True
        print(f"❌ Unexpected lead statuses: {statuses}")
        return False
    except requests.exceptions.RequestException as e:
        print(f"❌ Landing page test error: {e}")
        return False


def check_retry_queue(base_url):
    """Read the retry and dead-letter queue counts."""
    headers = {"X-Api-Key": os.getenv("WEBHOOK_RETRY_API_KEY", "")}
    try:
        response = requests.get(f"{base_url}/webhooks/process-retries", headers=headers, timeout=10)
        if response.status_code == 200:
            print(f"✅ Retry queue: {response.json()['deadLetterQueue']}")
            return True
        print(f"❌ Retry queue check failed: {response.status_code}")
        return False
    except requests.exceptions.RequestException as e:
        print(f"❌ Retry queue check error: {e}")
        return False


def check_webhook_health(base_url):
    """Read webhook health from the analytics endpoint."""
    headers = {"X-Api-Key": os.getenv("WEBHOOK_RETRY_API_KEY", "")}
    try:
        response = requests.get(
            f"{base_url}/webhooks/analytics", params={"action": "health"}, headers=headers, timeout=10
        )
        if response.status_code == 200:
            print(f"✅ Webhook health: {response.json()['data']['status']}")
            return True
        print(f"❌ Webhook health check failed: {response.status_code}")
        return False
    except requests.exceptions.RequestException as e:
        print(f"❌ Webhook health check error: {e}")
        return False


def main():
    print("🚀 Smoke testing Lead Webhook Gateway")
    print("=" * 50)

    base_url = os.getenv("BASE_URL", "http://localhost:8000")

    checks = [
        ("Health Check", check_health),
        ("Landing Page Duplicate Merge", check_landing_page_duplicate),
        ("Retry Queue", check_retry_queue),
        ("Webhook Health", check_webhook_health),
    ]

    passed = 0
    for name, check in checks:
        print(f"\n🧪 Running {name}...")
        if check(base_url):
            passed += 1
        else:
            print(f"❌ {name} failed")

    print("\n" + "=" * 50)
    print(f"📊 Results: {passed}/{len(checks)} checks passed")
    return 0 if passed == len(checks) else 1


if __name__ == "__main__":
    sys.exit(main())
