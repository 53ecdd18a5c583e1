"""
Create the scheduling tables if they don't exist.

Usage:
    python scripts/create_tables.py
"""
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from sqlalchemy import inspect
from krib.config import settings
from krib.db import engine, Base
from krib.models import models  # noqa: F401  registers tables on Base.metadata


def create_tables() -> list:
    """Create missing tables; returns the names created."""
    if settings.database_url.startswith("sqlite:///./"):
        os.makedirs("var", exist_ok=True)
    existing = set(inspect(engine).get_table_names())
    missing = [name for name in Base.metadata.tables if name not in existing]
    if missing:
        Base.metadata.create_all(bind=engine)
    return missing


if __name__ == "__main__":
    created = create_tables()
    if created:
        print(f"[OK] Created tables: {', '.join(created)}")
    else:
        print("[OK] All tables already exist")
