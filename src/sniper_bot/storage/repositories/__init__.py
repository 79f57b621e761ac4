"""
Repository exports.
"""
from sniper_bot.storage.repositories.base import BaseRepository
from sniper_bot.storage.repositories.position_repo import PositionRepository

__all__ = [
    "BaseRepository",
    "PositionRepository",
]
