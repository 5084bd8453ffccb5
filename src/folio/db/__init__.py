"""Database module for SQLite persistence.

Provides:
- Database connection management
- Schema initialization
- Repository functions for books, originals, revisions, chapters,
  flags, approvals and cleanup jobs
- Content-addressed blob store for text bodies
"""

from folio.db.database import get_db, init_db

__all__ = ["get_db", "init_db"]
