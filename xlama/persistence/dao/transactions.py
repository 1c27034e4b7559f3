from __future__ import annotations

from dataclasses import asdict
from typing import List, Optional

from sqlalchemy import desc, select
from sqlalchemy.orm import Session

from xlama.core.structures.structures import DexTransactionRecord
from xlama.core.utils.date_utils import utc_now
from xlama.logging.logger import get_logger
from xlama.persistence.db import SessionFactory, SessionLocal, session_scope
from xlama.persistence.models import DexTransaction
from xlama.persistence.serializers import TransactionPayload, serialize_transaction

log = get_logger(__name__)


def _get_transaction(db: Session, tx_hash: str, user_address: str) -> Optional[DexTransaction]:
    return (
        db.execute(
            select(DexTransaction)
            .where(
                DexTransaction.tx_hash == tx_hash,
                DexTransaction.user_address == user_address,
            )
            .limit(1)
        )
        .scalars()
        .first()
    )


def upsert_transaction(db: Session, record: DexTransactionRecord) -> DexTransaction:
    """
    Insert a swap history row, or update the existing one for the same (tx_hash, user_address).

    `created_at` is only set on insert.
    """
    values = asdict(record)
    created_at = values.pop("created_at") or utc_now()

    row = _get_transaction(db, record.tx_hash, record.user_address)
    if row is None:
        row = DexTransaction(created_at=created_at, **values)
        db.add(row)
        log.info("[DAO][TRANSACTIONS][INSERT] tx=%s user=%s %s %s -> %s %s", record.tx_hash, record.user_address,
                 record.from_token_amount, record.from_token_symbol, record.to_token_amount,
                 record.to_token_symbol)
    else:
        for name, value in values.items():
            setattr(row, name, value)
        log.info("[DAO][TRANSACTIONS][UPDATE] tx=%s user=%s status=%s", record.tx_hash, record.user_address,
                 record.status)
    db.flush()
    return row


def get_transactions_for_user(db: Session, user_address: str, limit: int = 100) -> List[DexTransaction]:
    """Most recent first."""
    statement = (
        select(DexTransaction)
        .where(DexTransaction.user_address == user_address)
        .order_by(desc(DexTransaction.created_at), desc(DexTransaction.id))
        .limit(limit)
    )
    return list(db.execute(statement).scalars().all())


class SqlTransactionHistory:
    """Swap history recorder used by the execution coordinator, plus wallet history reads."""

    def __init__(self, session_factory: SessionFactory = SessionLocal) -> None:
        self._session_factory = session_factory

    def record_transaction(self, record: DexTransactionRecord) -> None:
        with session_scope(self._session_factory) as session:
            upsert_transaction(session, record)

    def list_transactions(self, user_address: str, limit: int = 100) -> List[TransactionPayload]:
        with session_scope(self._session_factory) as session:
            return [serialize_transaction(row) for row in get_transactions_for_user(session, user_address, limit)]
