#!/usr/bin/env python3
import os
import sys

import requests


def check_service(url, name):
    try:
        r = requests.get(url, timeout=5)
    except requests.RequestException as e:
        print(f"{name}: ERROR ({e})")
        return False
    if r.status_code != 200:
        print(f"{name}: ERROR (status {r.status_code})")
        return False
    body = r.json()
    if body.get("status") != "ok":
        print(f"{name}: DEGRADED ({body.get('components')})")
        return False
    print(f"{name}: OK")
    return True


def main():
    url = os.getenv("TENANTCORE_HEALTH_URL", "http://localhost:8000/health")
    sys.exit(0 if check_service(url, "tenantcore") else 1)


if __name__ == "__main__":
    main()
