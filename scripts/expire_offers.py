"""
Lapse slot offers whose expiry has passed and return their jobs to
pending_schedule. Meant to run from cron.

Usage:
    python scripts/expire_offers.py
"""
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import structlog

from krib.db import SessionLocal
from krib.errors import PersistenceError
from krib.logging import setup_logging
from krib.services.slot_offers import expire_stale_offers


def main() -> int:
    setup_logging()
    log = structlog.get_logger("expire_offers")
    db = SessionLocal()
    try:
        count = expire_stale_offers(db)
    except PersistenceError as exc:
        log.error("expire_offers_failed", error=exc.detail)
        return 1
    finally:
        db.close()
    log.info("expire_offers_done", expired=count)
    return 0


if __name__ == "__main__":
    sys.exit(main())
