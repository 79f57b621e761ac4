"""
Storage Layer - Async PostgreSQL database and the position store.

The position store is the sole source of truth for capital at risk. It is
created on startup and survives restarts; any position left open by a
previous run is picked up by the next management cycle.

Public API:
    Database, DatabaseConfig - Connection pool management
    Position - Open position model
    PositionRepository - insert / list / delete of open positions
"""
from sniper_bot.storage.database import Database, DatabaseConfig
from sniper_bot.storage.models import Position
from sniper_bot.storage.repositories import BaseRepository, PositionRepository

__all__ = [
    "Database",
    "DatabaseConfig",
    "Position",
    "BaseRepository",
    "PositionRepository",
]
