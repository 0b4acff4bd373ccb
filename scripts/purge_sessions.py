"""
Delete expired sessions.

Expired sessions are already rejected at validation time; this only keeps the
sessions table small. Safe to run from cron.

Usage:
    python scripts/purge_sessions.py
"""
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from dotenv import load_dotenv
load_dotenv()

from portal.auth.sessions import purge_expired_sessions
from portal.db import SessionLocal


def main() -> None:
    db = SessionLocal()
    try:
        removed = purge_expired_sessions(db)
        print(f"[OK] Removed {removed} expired sessions")
    finally:
        db.close()


if __name__ == "__main__":
    main()
