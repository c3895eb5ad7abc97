"""Credit ledger: the single choke point for balance reads and writes."""

from __future__ import annotations

from typing import Any, Dict, Optional
import uuid

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_ledger import CreditLedger
from models.user import User
from services.errors import IdentityNotFound, InsufficientCredits, ValidationError


ENTRY_PURCHASE = "purchase"
ENTRY_SUBSCRIPTION_RENEWAL = "subscription_renewal"
ENTRY_REWARD = "reward"
ENTRY_DEBIT = "debit"
ENTRY_REFUND = "refund"


async def get_balance(user_id: str, db: AsyncSession) -> int:
    result = await db.execute(select(User.credits).where(User.id == user_id))
    balance = result.scalar_one_or_none()
    if balance is None:
        raise IdentityNotFound("User not found", detail=f"user_id={user_id}")
    return int(balance)


async def apply_ledger_delta(
    user_id: str,
    db: AsyncSession,
    *,
    delta_credits: int,
    entry_type: str,
    reason: Optional[str] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    billing_provider: Optional[str] = None,
    billing_reference: Optional[str] = None,
) -> int:
    """Atomically add ``delta_credits`` and append a ledger entry.

    Flushes but does not commit, so callers can group the mutation with their own
    writes in one database transaction. Negative deltas only apply while the
    balance covers them.
    """
    delta = int(delta_credits)
    statement = update(User).where(User.id == user_id)
    if delta < 0:
        statement = statement.where(User.credits >= -delta)
    result = await db.execute(
        statement.values(credits=User.credits + delta).execution_options(synchronize_session=False)
    )

    if result.rowcount == 0:
        available = await get_balance(user_id, db)
        raise InsufficientCredits(
            f"Insufficient credits. Required: {-delta}, available: {available}. Top up credits to continue."
        )

    balance_after = await get_balance(user_id, db)
    db.add(
        CreditLedger(
            id=str(uuid.uuid4()),
            user_id=user_id,
            entry_type=entry_type,
            delta_credits=delta,
            balance_after=balance_after,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
            billing_provider=billing_provider,
            billing_reference=billing_reference,
        )
    )
    await db.flush()
    return balance_after


async def add_credits(
    user_id: str,
    db: AsyncSession,
    *,
    credits: int,
    entry_type: str = ENTRY_REWARD,
    reason: Optional[str] = None,
    billing_provider: Optional[str] = None,
    billing_reference: Optional[str] = None,
) -> int:
    """Grant credits and commit. Returns the new balance."""
    grant = int(credits)
    if grant <= 0:
        raise ValidationError("credits must be greater than 0")
    try:
        balance = await apply_ledger_delta(
            user_id,
            db,
            delta_credits=grant,
            entry_type=entry_type,
            reason=reason,
            billing_provider=billing_provider,
            billing_reference=billing_reference,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return balance


async def consume_credits(
    user_id: str,
    db: AsyncSession,
    *,
    cost: int,
    reason: str,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> Dict[str, Any]:
    debit_cost = max(int(cost), 0)
    if debit_cost == 0:
        return {"charged": 0, "balance_after": await get_balance(user_id, db)}

    try:
        balance_after = await apply_ledger_delta(
            user_id,
            db,
            delta_credits=-debit_cost,
            entry_type=ENTRY_DEBIT,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return {"charged": debit_cost, "balance_after": balance_after}


async def refund_credits(user_id: str, db: AsyncSession, *, credits: int, reason: str) -> int:
    return await add_credits(user_id, db, credits=credits, entry_type=ENTRY_REFUND, reason=reason)


async def has_billing_reference(user_id: str, db: AsyncSession, billing_reference: str) -> bool:
    result = await db.execute(
        select(CreditLedger.id).where(
            CreditLedger.user_id == user_id,
            CreditLedger.billing_reference == billing_reference,
        )
    )
    return result.first() is not None


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    balance = await get_balance(user_id, db)
    result = await db.execute(
        select(CreditLedger)
        .where(CreditLedger.user_id == user_id)
        .order_by(CreditLedger.created_at.desc())
        .limit(30)
    )
    entries = result.scalars().all()
    return {
        "balance": balance,
        "costs": {
            "generate_image": max(int(settings.CREDIT_COST_GENERATE_IMAGE), 0),
        },
        "recent_entries": [
            {
                "id": entry.id,
                "entry_type": entry.entry_type,
                "delta_credits": entry.delta_credits,
                "balance_after": entry.balance_after,
                "reason": entry.reason,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }
