"""Processor-neutral view of the webhook events settlement consumes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from services.plans import ONE_TIME


CHECKOUT_COMPLETED = "checkout.session.completed"
CHECKOUT_ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
PAYMENT_STATUS_UNPAID = "unpaid"
INVOICE_PAID = "invoice.payment_succeeded"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"


@dataclass(frozen=True)
class CheckoutCompleted:
    session_id: str
    user_id: Optional[str]
    plan_id: Optional[str]
    plan_type: str
    pix_bonus: int
    payment_intent_id: Optional[str]
    mode: Optional[str]
    amount_total: int
    currency: str
    subscription_id: Optional[str] = None
    payment_status: Optional[str] = None

    @property
    def awaiting_payment(self) -> bool:
        """Delayed methods such as PIX complete the session before the money arrives."""
        return self.payment_status == PAYMENT_STATUS_UNPAID


@dataclass(frozen=True)
class InvoicePaid:
    invoice_id: str
    subscription_id: Optional[str]
    billing_reason: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionCancelled:
    subscription_id: str


@dataclass(frozen=True)
class UnhandledEvent:
    event_type: str


SettlementEvent = Union[CheckoutCompleted, InvoicePaid, SubscriptionCancelled, UnhandledEvent]


def _to_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _object_id(value: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if isinstance(value, dict):
        value = value.get("id")
    return str(value) if value else None


def _invoice_subscription(invoice: Dict[str, Any]) -> Optional[str]:
    subscription = _object_id(invoice.get("subscription"))
    if subscription:
        return subscription
    # Newer API versions nest it under parent.subscription_details.
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return _object_id(details.get("subscription"))


def parse_event(event: Dict[str, Any]) -> SettlementEvent:
    event_type = str(event.get("type") or "")
    obj = (event.get("data") or {}).get("object") or {}

    if event_type in (CHECKOUT_COMPLETED, CHECKOUT_ASYNC_PAYMENT_SUCCEEDED):
        metadata = obj.get("metadata") or {}
        return CheckoutCompleted(
            session_id=str(obj.get("id") or ""),
            user_id=metadata.get("user_id") or obj.get("client_reference_id"),
            plan_id=metadata.get("plan_id"),
            plan_type=metadata.get("plan_type") or ONE_TIME,
            pix_bonus=_to_int(metadata.get("pix_bonus")),
            payment_intent_id=_object_id(obj.get("payment_intent")),
            mode=obj.get("mode"),
            amount_total=_to_int(obj.get("amount_total")),
            currency=str(obj.get("currency") or "brl"),
            subscription_id=_object_id(obj.get("subscription")),
            payment_status=obj.get("payment_status"),
        )
    if event_type == INVOICE_PAID:
        return InvoicePaid(
            invoice_id=str(obj.get("id") or ""),
            subscription_id=_invoice_subscription(obj),
            billing_reason=obj.get("billing_reason"),
        )
    if event_type == SUBSCRIPTION_DELETED:
        return SubscriptionCancelled(subscription_id=str(obj.get("id") or ""))
    return UnhandledEvent(event_type=event_type)
