"""
Pydantic models for persisted state.

Token amounts are integers in smallest-denomination units. They are stored
as decimal strings because they routinely exceed 64 bits.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _validate_amount(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text.isdigit():
        raise ValueError(f"Amount must be a non-negative integer string, got {value!r}")
    return text


class Position(BaseModel):
    """
    Capital committed to a token by a confirmed entry swap.

    Positions are never updated in place. Closing one deletes the row.
    """

    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    token_address: str
    amount_in: str
    token_amount: Optional[str] = None  # wallet balance after entry, if known
    entry_tx_hash: str
    opened_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("amount_in", mode="before")
    @classmethod
    def _check_amount_in(cls, value):
        return _validate_amount(value)

    @field_validator("token_amount", mode="before")
    @classmethod
    def _check_token_amount(cls, value):
        return _validate_amount(value)

    @property
    def amount_in_units(self) -> int:
        return int(self.amount_in)

    @property
    def token_amount_units(self) -> Optional[int]:
        return int(self.token_amount) if self.token_amount is not None else None
