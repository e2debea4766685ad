"""Paginated ledger history (newest first)."""

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from tokenwise_api.db.models import LedgerEntry
from tokenwise_api.ledger.models import LedgerEntryView, LedgerHistory


def get_ledger_history(
    db: Session, user_id: str, *, limit: int = 50, offset: int = 0
) -> LedgerHistory:
    total = db.execute(
        select(func.count()).select_from(LedgerEntry).where(LedgerEntry.user_id == user_id)
    ).scalar_one()

    rows = (
        db.execute(
            select(LedgerEntry)
            .where(LedgerEntry.user_id == user_id)
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.balance_after.asc())
            .limit(limit)
            .offset(offset)
        )
        .scalars()
        .all()
    )

    return LedgerHistory(
        entries=[LedgerEntryView.model_validate(r) for r in rows],
        total=total,
        limit=limit,
        offset=offset,
    )
