"""Quick script to print recent orders with their RunPod job and output state."""
import os
import sys

# Ensure project root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import Order, SessionLocal


def _short(value, limit=70):
    if not value:
        return "-"
    return value[:limit] + "..." if len(value) > limit else value


def main(limit: int = 15) -> int:
    db = SessionLocal()
    try:
        orders = db.query(Order).order_by(Order.created_at.desc()).limit(limit).all()
        print("Recent orders (newest first):")
        print("-" * 80)
        for o in orders:
            print("order_id:", o.id)
            print("  status:", o.status, "| ref:", o.shopify_order_id, "| style:", o.style)
            print("  source:", _short(o.image_url))
            if not o.jobs:
                print("  job: none")
            for job in o.jobs:
                print("  job:", job.runpod_id)
                print("    image:", _short(job.output_image_url))
                print("    video:", _short(job.output_video_url))
            print()
    finally:
        db.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main(int(sys.argv[1]) if len(sys.argv) > 1 else 15))
