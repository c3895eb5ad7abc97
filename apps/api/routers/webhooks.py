"""Payment processor webhooks. Trust comes from the signature, not a session."""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from services.errors import InvalidSignature, ValidationError
from services.payments import StripeGateway, get_payment_gateway
from services.security_log import log_security_event
from services.settlement import handle_webhook

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    """Settle Stripe events. 400 and 5xx responses make Stripe redeliver."""
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")
    try:
        return await handle_webhook(payload, signature, db, gateway)
    except ValidationError as exc:
        if isinstance(exc, InvalidSignature):
            log_security_event("invalid_signature", "high", request=request, reason=exc.detail or exc.message)
        logger.warning("Rejected webhook: %s (%s)", exc.message, exc.detail)
        return JSONResponse(status_code=400, content={"received": False, "error": exc.message})
