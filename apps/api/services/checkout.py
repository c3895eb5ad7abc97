"""Checkout session creation and pending transaction bookkeeping."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.transaction import TRANSACTION_PENDING, Transaction
from services.errors import UpstreamError, ValidationError
from services.payments import StripeGateway
from services.plans import Plan, clamp_pix_bonus, get_plan

logger = logging.getLogger(__name__)


def _product_name(plan: Plan, pix_bonus: int) -> str:
    if plan.is_subscription:
        return f"Genius subscription - {plan.credits} images/month"
    suffix = f" (+{pix_bonus} PIX bonus)" if pix_bonus else ""
    return f"Plan {plan.plan_id} - {plan.credits} credits{suffix}"


def build_session_params(
    plan: Plan,
    *,
    user_id: str,
    amount: int,
    currency: str,
    credits: int,
    pix_bonus: int,
) -> Dict[str, Any]:
    """Stripe Checkout parameters for a single line item."""
    site_url = settings.SITE_URL.rstrip("/")
    price_data: Dict[str, Any] = {
        "currency": currency,
        "product_data": {"name": _product_name(plan, pix_bonus)},
        "unit_amount": amount,
    }
    metadata = {
        "plan_id": plan.plan_id,
        "credits": str(credits),
        "user_id": user_id,
        "plan_type": plan.plan_type,
    }
    if plan.is_subscription:
        price_data["recurring"] = {"interval": plan.interval}
        metadata["interval"] = str(plan.interval)
    if pix_bonus:
        metadata["pix_bonus"] = str(pix_bonus)

    params: Dict[str, Any] = {
        "payment_method_types": ["card"] if plan.is_subscription else ["card", "pix"],
        "line_items": [{"price_data": price_data, "quantity": 1}],
        "mode": "subscription" if plan.is_subscription else "payment",
        "success_url": f"{site_url}?checkout=success",
        "cancel_url": f"{site_url}?checkout=cancel",
        "client_reference_id": user_id,
        "metadata": metadata,
    }
    if plan.is_subscription:
        # Renewal invoices resolve the identity from the subscription itself.
        params["subscription_data"] = {"metadata": {"user_id": user_id, "plan_id": plan.plan_id}}
    return params


async def create_checkout_session(
    db: AsyncSession,
    gateway: StripeGateway,
    *,
    user_id: str,
    plan_id: str,
    amount: Optional[int] = None,
    currency: Optional[str] = None,
    plan_type: Optional[str] = None,
    interval: Optional[str] = None,
    pix_bonus: Optional[int] = None,
) -> Dict[str, str]:
    """Open a processor session for ``plan_id`` and record a pending transaction."""
    plan = get_plan(plan_id)
    if plan_type and plan_type != plan.plan_type:
        raise ValidationError("Plan type does not match plan", detail=f"{plan_id} is {plan.plan_type}")
    if interval and plan.is_subscription and interval != plan.interval:
        raise ValidationError("Billing interval does not match plan", detail=f"{plan_id} bills per {plan.interval}")

    bonus = clamp_pix_bonus(plan, pix_bonus)
    credits = plan.credits + bonus
    charge = plan.charge_amount(amount)
    charge_currency = (currency or settings.DEFAULT_CURRENCY).lower()

    logger.info(
        "checkout_session user=%s plan=%s type=%s credits=%s (base=%s pix_bonus=%s) amount=%s",
        user_id,
        plan.plan_id,
        plan.plan_type,
        credits,
        plan.credits,
        bonus,
        charge,
    )

    session = await gateway.create_checkout_session(
        build_session_params(
            plan,
            user_id=user_id,
            amount=charge,
            currency=charge_currency,
            credits=credits,
            pix_bonus=bonus,
        )
    )
    if not session.get("id"):
        raise UpstreamError("Could not create checkout session", detail="processor returned no session id")

    try:
        db.add(
            Transaction(
                user_id=user_id,
                stripe_session_id=session["id"],
                plan_id=plan.plan_id,
                plan_type=plan.plan_type,
                credits=credits,
                amount_total=charge,
                currency=charge_currency,
                status=TRANSACTION_PENDING,
            )
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("Could not record pending transaction for session %s: %s", session["id"], exc)
        raise UpstreamError("Could not create transaction", detail=str(exc)) from exc

    return {"sessionId": session["id"], "url": session.get("url") or ""}
