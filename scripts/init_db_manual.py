"""
Manual DB initialization script.

Creates the orders, jobs and webhook_events tables. The app also does this at
startup outside mock mode; use this after pointing DATABASE_URL at a new database.
"""
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import get_database_url, init_db


def main() -> int:
    try:
        url = get_database_url()
        init_db()
        print(f"Database initialized successfully ({url.split('@')[-1]}).")
        return 0
    except Exception as e:
        print(f"Database init failed: {e}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
