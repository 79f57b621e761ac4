"""
Base repository class for async PostgreSQL access.
"""
from __future__ import annotations

from typing import Generic, Optional, Type, TypeVar

from pydantic import BaseModel

from sniper_bot.storage.database import Database

T = TypeVar("T", bound=BaseModel)


class BaseRepository(Generic[T]):
    """
    Row <-> model plumbing shared by repositories.

    Subclasses set ``table_name`` and ``model_class``.
    """

    table_name: str
    model_class: Type[T]

    def __init__(self, db: Database) -> None:
        self.db = db

    def _record_to_model(self, record) -> Optional[T]:
        if record is None:
            return None
        return self.model_class(**dict(record))

    def _records_to_models(self, records) -> list[T]:
        return [self._record_to_model(r) for r in records]

    async def delete(self, id_value) -> bool:
        """Delete a row by ID. Returns True if a row was removed."""
        query = f"DELETE FROM {self.table_name} WHERE id = $1"
        result = await self.db.execute(query, id_value)
        return result != "DELETE 0"

    async def count(self) -> int:
        query = f"SELECT COUNT(*) FROM {self.table_name}"
        return await self.db.fetchval(query)
