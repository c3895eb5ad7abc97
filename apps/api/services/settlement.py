"""Webhook-driven settlement: the only place purchases turn into credits.

A checkout completion flips its transaction to ``completed`` and increments the
balance inside one database transaction. The pending -> completed update is
conditional, and the unique session id guards inserts, so duplicate or
concurrent deliveries of the same event grant credits once. Sessions that
complete unpaid (delayed methods such as PIX) settle on the later
``checkout.session.async_payment_succeeded`` event.
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Dict

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.transaction import TRANSACTION_COMPLETED, TRANSACTION_PENDING, Transaction
from services.credits import (
    ENTRY_PURCHASE,
    ENTRY_SUBSCRIPTION_RENEWAL,
    apply_ledger_delta,
    has_billing_reference,
)
from services.errors import IdentityNotFound, UpstreamError, ValidationError
from services.payment_events import (
    CheckoutCompleted,
    InvoicePaid,
    SubscriptionCancelled,
    parse_event,
)
from services.payments import StripeGateway
from services.plans import DEFAULT_RENEWAL_PLAN_ID, ONE_TIME, PLAN_CATALOG, credits_for

logger = logging.getLogger(__name__)

ALREADY_PROCESSED = "already processed"
AWAITING_PAYMENT = "awaiting payment"


async def handle_webhook(
    payload: bytes,
    signature: str,
    db: AsyncSession,
    gateway: StripeGateway,
) -> Dict[str, Any]:
    """Verify, classify and settle one webhook delivery."""
    event = parse_event(gateway.construct_event(payload, signature))

    if isinstance(event, CheckoutCompleted):
        return await settle_checkout(event, db, gateway)
    if isinstance(event, InvoicePaid):
        return await settle_renewal(event, db, gateway)
    if isinstance(event, SubscriptionCancelled):
        logger.info("Subscription %s cancelled", event.subscription_id)
        return {"received": True}
    return {"received": True, "message": f"Event {event.event_type} not processed"}


async def _is_pix_payment(event: CheckoutCompleted, gateway: StripeGateway) -> bool:
    if event.plan_type != ONE_TIME or event.pix_bonus <= 0:
        return False
    return await gateway.payment_intent_is_pix(event.payment_intent_id)


async def settle_checkout(event: CheckoutCompleted, db: AsyncSession, gateway: StripeGateway) -> Dict[str, Any]:
    if event.awaiting_payment:
        # Settled later by checkout.session.async_payment_succeeded.
        logger.info("Session %s completed unpaid, awaiting async payment", event.session_id)
        return {"received": True, "message": AWAITING_PAYMENT}

    paid_with_pix = await _is_pix_payment(event, gateway)
    credits = credits_for(event.plan_id, pix_bonus=event.pix_bonus, paid_with_pix=paid_with_pix)

    logger.info(
        "checkout_completed session=%s user=%s plan=%s type=%s pix=%s credits=%s",
        event.session_id,
        event.user_id,
        event.plan_id,
        event.plan_type,
        paid_with_pix,
        credits,
    )
    if not event.session_id or not event.user_id or not credits:
        raise ValidationError(
            "Invalid settlement data",
            detail=f"session={event.session_id!r} user={event.user_id!r} credits={credits}",
        )

    try:
        result = await db.execute(
            select(Transaction).where(Transaction.stripe_session_id == event.session_id).with_for_update()
        )
        existing = result.scalar_one_or_none()
        if existing is not None and existing.status == TRANSACTION_COMPLETED:
            await db.rollback()
            logger.info("Session %s already settled, skipping", event.session_id)
            return {"received": True, "message": ALREADY_PROCESSED}

        now = datetime.now(timezone.utc)
        if existing is None:
            db.add(
                Transaction(
                    user_id=event.user_id,
                    stripe_session_id=event.session_id,
                    plan_id=event.plan_id or "",
                    plan_type=event.plan_type,
                    credits=credits,
                    amount_total=event.amount_total,
                    currency=event.currency,
                    status=TRANSACTION_COMPLETED,
                    completed_at=now,
                )
            )
            await db.flush()
        else:
            transition = await db.execute(
                update(Transaction)
                .where(
                    Transaction.stripe_session_id == event.session_id,
                    Transaction.status == TRANSACTION_PENDING,
                )
                .values(status=TRANSACTION_COMPLETED, completed_at=now, credits=credits)
                .execution_options(synchronize_session=False)
            )
            if transition.rowcount == 0:
                await db.rollback()
                return {"received": True, "message": ALREADY_PROCESSED}

        balance = await apply_ledger_delta(
            event.user_id,
            db,
            delta_credits=credits,
            entry_type=ENTRY_PURCHASE,
            reason=f"Plan {event.plan_id} purchase",
            reference_type="transaction",
            reference_id=event.session_id,
            billing_provider="stripe",
            billing_reference=event.session_id,
        )
        await db.commit()
    except IntegrityError:
        # A concurrent delivery inserted the same session first.
        await db.rollback()
        logger.info("Session %s settled concurrently, skipping", event.session_id)
        return {"received": True, "message": ALREADY_PROCESSED}
    except IdentityNotFound as exc:
        await db.rollback()
        raise UpstreamError("Could not load user profile", detail=exc.detail) from exc
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("Settlement of session %s failed: %s", event.session_id, exc)
        raise UpstreamError("Could not update transaction", detail=str(exc)) from exc

    if event.subscription_id:
        logger.info("Subscription %s started for user %s", event.subscription_id, event.user_id)
    logger.info("Credits added for user %s: %s (balance %s)", event.user_id, credits, balance)
    return {"received": True, "creditsAdded": credits}


async def settle_renewal(event: InvoicePaid, db: AsyncSession, gateway: StripeGateway) -> Dict[str, Any]:
    if not event.subscription_id:
        return {"received": True, "message": "No subscription id"}
    if event.billing_reason == "subscription_create":
        # The first period is granted by the checkout completion.
        return {"received": True, "message": "Initial subscription invoice"}

    metadata = await gateway.subscription_metadata(event.subscription_id)
    user_id = metadata.get("user_id")
    plan_id = metadata.get("plan_id") or DEFAULT_RENEWAL_PLAN_ID
    plan = PLAN_CATALOG.get(plan_id) or PLAN_CATALOG[DEFAULT_RENEWAL_PLAN_ID]
    credits = plan.credits

    logger.info(
        "subscription_renewal subscription=%s invoice=%s user=%s plan=%s credits=%s",
        event.subscription_id,
        event.invoice_id,
        user_id,
        plan_id,
        credits,
    )
    if not user_id:
        logger.error("No user id on subscription %s, skipping credit grant", event.subscription_id)
        return {"received": True, "message": "User id not found"}

    try:
        if event.invoice_id and await has_billing_reference(user_id, db, event.invoice_id):
            await db.rollback()
            return {"received": True, "message": ALREADY_PROCESSED}
        balance = await apply_ledger_delta(
            user_id,
            db,
            delta_credits=credits,
            entry_type=ENTRY_SUBSCRIPTION_RENEWAL,
            reason=f"Plan {plan_id} renewal",
            reference_type="subscription",
            reference_id=event.subscription_id,
            billing_provider="stripe",
            billing_reference=event.invoice_id or None,
        )
        await db.commit()
    except IntegrityError:
        # A concurrent delivery recorded the same invoice first.
        await db.rollback()
        logger.info("Invoice %s settled concurrently, skipping", event.invoice_id)
        return {"received": True, "message": ALREADY_PROCESSED}
    except IdentityNotFound as exc:
        await db.rollback()
        raise UpstreamError("Could not load user profile", detail=exc.detail) from exc
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("Renewal for subscription %s failed: %s", event.subscription_id, exc)
        raise UpstreamError("Could not update credits", detail=str(exc)) from exc

    logger.info("Renewal credits added for user %s: %s (balance %s)", user_id, credits, balance)
    return {"received": True, "creditsAdded": credits}
