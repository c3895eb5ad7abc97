"""Stripe gateway: the only module that talks to the payment processor."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import stripe

from config import settings
from services.errors import InvalidSignature, UpstreamError, ValidationError

logger = logging.getLogger(__name__)


def _field(obj: Any, key: str) -> Any:
    """Read ``key`` from a Stripe object or plain dict, tolerating absence."""
    if obj is None:
        return None
    try:
        return obj[key]
    except (KeyError, TypeError, AttributeError):
        return getattr(obj, key, None)


class StripeGateway:
    """Thin async wrapper over the blocking Stripe SDK."""

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        api_version: Optional[str] = None,
        webhook_tolerance: int = 300,
    ):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.api_version = api_version
        self.webhook_tolerance = webhook_tolerance

    def _request_options(self) -> Dict[str, Any]:
        options: Dict[str, Any] = {"api_key": self.secret_key}
        if self.api_version:
            options["stripe_version"] = self.api_version
        return options

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify the webhook signature and return the decoded event.

        Fails closed when the header or the signing secret is missing.
        """
        if not signature:
            raise InvalidSignature("Missing webhook signature")
        if not self.webhook_secret:
            raise InvalidSignature("Webhook signing secret is not configured")

        try:
            body = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else str(payload)
        except UnicodeDecodeError as exc:
            raise ValidationError("Malformed webhook payload", detail=str(exc)) from exc
        try:
            stripe.WebhookSignature.verify_header(body, signature, self.webhook_secret, self.webhook_tolerance)
        except stripe.SignatureVerificationError as exc:
            raise InvalidSignature("Webhook signature verification failed", detail=str(exc)) from exc

        try:
            event = json.loads(body)
        except ValueError as exc:
            raise ValidationError("Malformed webhook payload", detail=str(exc)) from exc
        if not isinstance(event, dict) or not event.get("type"):
            raise ValidationError("Malformed webhook payload")
        return event

    async def create_checkout_session(self, params: Dict[str, Any]) -> Dict[str, str]:
        """Open a hosted checkout session. Returns ``{"id", "url"}``."""
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create, **params, **self._request_options()
            )
        except stripe.StripeError as exc:
            raise UpstreamError("Could not create checkout session", detail=str(exc)) from exc
        return {"id": _field(session, "id"), "url": _field(session, "url")}

    async def payment_intent_is_pix(self, payment_intent_id: Optional[str]) -> bool:
        """Whether the payment intent was actually paid with PIX.

        Lookup failures count as "not PIX".
        """
        if not payment_intent_id:
            return False
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.retrieve,
                payment_intent_id,
                expand=["payment_method", "latest_charge"],
                **self._request_options(),
            )
        except stripe.StripeError as exc:
            logger.warning("Could not inspect payment intent %s: %s", payment_intent_id, exc)
            return False
        return payment_method_type(intent) == "pix"

    async def subscription_metadata(self, subscription_id: str) -> Dict[str, str]:
        try:
            subscription = await asyncio.to_thread(
                stripe.Subscription.retrieve, subscription_id, **self._request_options()
            )
        except stripe.StripeError as exc:
            raise UpstreamError("Could not load subscription", detail=str(exc)) from exc
        metadata = _field(subscription, "metadata")
        if metadata is None:
            return {}
        return {key: str(_field(metadata, key)) for key in ("user_id", "plan_id") if _field(metadata, key)}


def payment_method_type(intent: Any) -> Optional[str]:
    """Resolve the method actually used, not the allowed ones."""
    method = _field(intent, "payment_method")
    method_type = _field(method, "type") if not isinstance(method, str) else None
    if method_type:
        return str(method_type)

    charge = _field(intent, "latest_charge")
    details = _field(charge, "payment_method_details") if not isinstance(charge, str) else None
    details_type = _field(details, "type")
    if details_type:
        return str(details_type)

    allowed = _field(intent, "payment_method_types") or []
    if len(allowed) == 1:
        return str(allowed[0])
    return None


def get_payment_gateway() -> StripeGateway:
    """FastAPI dependency for the configured gateway."""
    return StripeGateway(
        secret_key=settings.STRIPE_SECRET_KEY,
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        api_version=settings.STRIPE_API_VERSION,
        webhook_tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
    )
