"""
Position repository - the durable record of capital at risk.

The table is append/delete only: insert on a confirmed entry swap, delete
on a confirmed exit swap. Each statement touches a single row, so no
cross-row transactions are needed.

``entry_tx_hash`` is unique, so inserting is idempotent: repeating it after
a dropped connection, or from the evaluator's unsaved-entry retry, returns
the row already stored for that swap.
"""
from __future__ import annotations

from sniper_bot.storage.models import Position
from sniper_bot.storage.repositories.base import BaseRepository


class PositionRepository(BaseRepository[Position]):
    """Repository for open positions."""

    table_name = "positions"
    model_class = Position

    async def insert(self, position: Position) -> Position:
        """Insert a position and return it with its assigned id."""
        query = """
            INSERT INTO positions
            (token_address, amount_in, token_amount, entry_tx_hash, opened_at)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (entry_tx_hash) DO NOTHING
            RETURNING *
        """
        record = await self.db.fetchrow(
            query,
            position.token_address,
            position.amount_in,
            position.token_amount,
            position.entry_tx_hash,
            position.opened_at,
        )
        if record is None:
            # An earlier attempt for the same swap already committed
            record = await self.db.fetchrow(
                "SELECT * FROM positions WHERE entry_tx_hash = $1",
                position.entry_tx_hash,
            )
        return self._record_to_model(record)

    async def list(self) -> list[Position]:
        """All open positions, oldest first."""
        query = "SELECT * FROM positions ORDER BY id"
        records = await self.db.fetch(query)
        return self._records_to_models(records)

    async def has_open_position(self, token_address: str) -> bool:
        query = "SELECT 1 FROM positions WHERE LOWER(token_address) = LOWER($1) LIMIT 1"
        return await self.db.fetchval(query, token_address) is not None
