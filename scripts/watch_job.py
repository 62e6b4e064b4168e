"""
Poll GET /api/jobs/{runpod_id} on a running server until the job is terminal.

Usage: python scripts/watch_job.py <runpod_id> [base_url]
Transient statuses (404 while the row is being written, 429, 502-504) are
retried; configuration errors reported by the server stop the loop.
"""
import sys
import time

import httpx

POLL_INTERVAL_SECONDS = 2.5
MAX_ATTEMPTS = 120
RETRYABLE_STATUS = {404, 429, 502, 503, 504}
FATAL_CODES = {"TLS_CERT_ERROR", "DB_CONNECTIVITY_ERROR", "INTERNAL_ERROR"}


def _error_code(r: httpx.Response):
    try:
        body = r.json()
    except ValueError:
        return None, r.text[:200]
    if not isinstance(body, dict):
        return None, str(body)[:200]
    return body.get("code"), body.get("error")


def main(argv) -> int:
    if len(argv) < 2:
        print(__doc__.strip())
        return 2
    runpod_id = argv[1]
    base_url = (argv[2] if len(argv) > 2 else "http://127.0.0.1:8000").rstrip("/")

    with httpx.Client(base_url=base_url, timeout=15) as client:
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                r = client.get(f"/api/jobs/{runpod_id}")
            except httpx.HTTPError as e:
                print(f"[{attempt}] request failed: {e}")
                time.sleep(POLL_INTERVAL_SECONDS)
                continue

            if r.status_code >= 400:
                code, message = _error_code(r)
                if code in FATAL_CODES:
                    print(f"[{attempt}] {r.status_code} {code}: {message}")
                    return 1
                retryable = r.status_code in RETRYABLE_STATUS or (r.status_code >= 500 and attempt < 3)
                if not retryable:
                    print(f"[{attempt}] {r.status_code}: {message}")
                    return 1
                print(f"[{attempt}] {r.status_code}, retrying...")
                time.sleep(POLL_INTERVAL_SECONDS)
                continue

            data = r.json()
            status = data.get("status")
            print(f"[{attempt}] status={status}")
            if status == "SUCCEEDED":
                print("image:", data.get("outputImageUrl") or "-")
                print("video:", data.get("outputVideoUrl") or "-")
                return 0
            if status == "FAILED":
                print("failed:", data.get("failureReason") or "(no reason reported)")
                return 1
            time.sleep(POLL_INTERVAL_SECONDS)

    print(f"Gave up after {MAX_ATTEMPTS} attempts.")
    return 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv))
