from typing import Optional

from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import Integer, String, Text
from database import Base


class LedgerEvent(Base):
    """One append-only, hash-chained ledger entry. ``id`` is the ledger sequence."""
    __tablename__ = "ledger_events"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    type: Mapped[str] = mapped_column(String(32), index=True)
    batch_id: Mapped[Optional[int]] = mapped_column(Integer, index=True, nullable=True)
    actor: Mapped[Optional[str]] = mapped_column(String(128), index=True, nullable=True)
    payload: Mapped[str] = mapped_column(Text)
    timestamp: Mapped[str] = mapped_column(String(32))
    event_ref: Mapped[str] = mapped_column(String(80), unique=True)
    prev_hash: Mapped[str] = mapped_column(String(128))
    hash: Mapped[str] = mapped_column(String(128))
