"""
Submit one transform job to RunPod without going through the HTTP API.

Usage: python scripts/submit_job.py <image_url> [style] [seed]
Needs RUNPOD_ENDPOINT_ID, RUNPOD_API_KEY, RUNPOD_WEBHOOK_SECRET and a public
PUBLIC_BASE_URL in .env (or env). Nothing is written to the database.
"""
import json
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from clients.runpod_client import ProviderError
from config import ConfigError, get_settings
from services.job_submitter import JobSubmitter
from services.payload_builder import PayloadError


def main(argv) -> int:
    if len(argv) < 2:
        print(__doc__.strip())
        return 2
    image_url = argv[1]
    style = argv[2] if len(argv) > 2 else "default"
    seed = int(argv[3]) if len(argv) > 3 else None

    settings = get_settings()
    print("Submitting RunPod job...")
    print("  image:", image_url)
    print("  style:", style, "| seed:", seed if seed is not None else "(random)")
    print("  mock mode:", settings.mock_mode)
    try:
        result = JobSubmitter(settings).submit(image_url, style, seed)
    except (ConfigError, PayloadError, ProviderError) as e:
        print("ERROR:", e)
        return 1

    print()
    print("runpod_id:", result.runpod_id)
    print("status:", result.status)
    print("seed:", result.seed)
    print("webhook:", result.webhook_url.split("?")[0])
    print(json.dumps(result.response, indent=2)[:2000])
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv))
