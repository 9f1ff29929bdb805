#!/usr/bin/env python
"""Initialize database tables and the repository storage root."""

import sys

sys.path.insert(0, ".")

from repo_leaderboard.core.config import settings
from repo_leaderboard.db.database import init_db
from repo_leaderboard.storage.factory import get_storage


def main() -> None:
    """Main initialization function."""
    print(f"Initializing database: {settings.database_url.split('@')[-1]}")

    # Create tables
    init_db()
    print("Database tables created")

    # Make sure the storage root exists
    storage = get_storage()
    print(f"Storage ready: {settings.storage_backend} ({type(storage).__name__})")


if __name__ == "__main__":
    main()
