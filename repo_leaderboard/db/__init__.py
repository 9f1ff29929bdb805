from repo_leaderboard.db.database import get_sync_db, get_sync_session_maker, init_db

__all__ = ["get_sync_db", "get_sync_session_maker", "init_db"]
