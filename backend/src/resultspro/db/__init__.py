"""Persistence clients."""

from resultspro.config import settings
from resultspro.db.memory import InMemoryDatabase
from resultspro.db.postgres import Database


def create_database() -> Database | InMemoryDatabase:
    """Build the client selected by settings.database_backend."""
    if settings.database_backend == "memory":
        return InMemoryDatabase()
    return Database()


# Global database instance
db = create_database()

__all__ = ["Database", "InMemoryDatabase", "create_database", "db"]
