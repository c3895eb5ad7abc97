"""Billing and credits router."""

from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context, resolve_user_scope
from services.checkout import create_checkout_session
from services.credits import get_credit_summary
from services.payments import StripeGateway, get_payment_gateway

router = APIRouter()


class CheckoutRequest(BaseModel):
    plan_id: str = Field(min_length=1)
    amount: Optional[int] = Field(default=None, gt=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    user_id: Optional[str] = None
    plan_type: Optional[Literal["one-time", "subscription"]] = None
    interval: Optional[Literal["month", "year"]] = None
    pix_bonus: Optional[int] = Field(default=None, ge=0)


class CheckoutResponse(BaseModel):
    sessionId: str
    url: str


@router.get("/credits")
async def credits_summary(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await get_credit_summary(auth.user_id, db)


@router.post("/checkout-session", response_model=CheckoutResponse)
async def checkout_session(
    request: CheckoutRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    """Open a hosted checkout page and record a pending transaction."""
    scoped_user_id = resolve_user_scope(auth.user_id, request.user_id)
    return await create_checkout_session(
        db,
        gateway,
        user_id=scoped_user_id,
        plan_id=request.plan_id,
        amount=request.amount,
        currency=request.currency,
        plan_type=request.plan_type,
        interval=request.interval,
        pix_bonus=request.pix_bonus,
    )
