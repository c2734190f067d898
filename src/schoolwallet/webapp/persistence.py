"""Persistence and SQLModel definitions for the SchoolWallet web console."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlmodel import Field, Session, SQLModel, create_engine, desc, select

from ..models import TransactionResult
from .config import SQLITE_FILE_NAME

# ---------------------------------------------------------------------------
# Database models
# ---------------------------------------------------------------------------
engine = create_engine(
    f"sqlite:///{SQLITE_FILE_NAME}",
    echo=False,
    connect_args={"check_same_thread": False},
)

# Ensure fresh metadata when re-importing in test contexts.
SQLModel.metadata.clear()


class TransferReceipt(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    transaction_id: str
    agent_user_id: str
    recipient_id: str
    recipient_name: str
    recipient_email: str
    amount_cents: int
    description: str = ""
    message: str = ""
    manual_entry: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)


def create_db_and_tables() -> None:
    SQLModel.metadata.create_all(engine)


def _to_cents(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


def record_receipt(
    *,
    agent_user_id: str,
    recipient_id: str,
    recipient_name: str,
    recipient_email: str,
    amount: Decimal,
    description: str,
    result: TransactionResult,
    manual_entry: bool = False,
) -> TransferReceipt:
    receipt = TransferReceipt(
        transaction_id=result.transaction_id,
        agent_user_id=agent_user_id,
        recipient_id=recipient_id,
        recipient_name=recipient_name,
        recipient_email=recipient_email,
        amount_cents=_to_cents(amount),
        description=description,
        message=result.message,
        manual_entry=manual_entry,
    )
    with Session(engine, expire_on_commit=False) as session:
        session.add(receipt)
        session.commit()
        session.refresh(receipt)
    return receipt


def list_receipts(agent_user_id: str, *, limit: int = 20) -> List[TransferReceipt]:
    with Session(engine, expire_on_commit=False) as session:
        statement = (
            select(TransferReceipt)
            .where(TransferReceipt.agent_user_id == agent_user_id)
            .order_by(desc(TransferReceipt.created_at))
            .limit(limit)
        )
        return list(session.exec(statement).all())


__all__ = [
    "TransferReceipt",
    "create_db_and_tables",
    "engine",
    "list_receipts",
    "record_receipt",
]
