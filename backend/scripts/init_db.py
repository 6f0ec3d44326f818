#!/usr/bin/env python3
""" Create the CalPin tables in the configured database. """
import sys
from pathlib import Path

# Add the repository root to the Python path
sys.path.append(str(Path(__file__).resolve().parents[2]))

from backend.calpin.config import get_settings  # noqa: E402
from backend.calpin.db.base import init_db, make_engine, ping  # noqa: E402

if __name__ == "__main__":
    settings = get_settings()
    engine = make_engine(settings.DATABASE_URL)
    if not ping(engine):
        print(f"Database unreachable at {engine.url.render_as_string(hide_password=True)}")
        sys.exit(1)
    print("Initializing database...")
    init_db(engine)
    engine.dispose()
    print("Database initialization complete!")
