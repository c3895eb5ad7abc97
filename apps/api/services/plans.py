"""Static plan catalog: credits, prices (in cents) and PIX bonuses."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from services.errors import ValidationError


ONE_TIME = "one-time"
SUBSCRIPTION = "subscription"

YEARLY_SUBSCRIPTION_TOTAL = 17880  # 1490 x 12, billed upfront
DEFAULT_RENEWAL_PLAN_ID = "subscription-monthly"


@dataclass(frozen=True)
class Plan:
    plan_id: str
    credits: int
    price: int
    plan_type: str = ONE_TIME
    interval: Optional[str] = None
    pix_bonus: int = 0

    @property
    def is_subscription(self) -> bool:
        return self.plan_type == SUBSCRIPTION

    def charge_amount(self, requested: Optional[int] = None) -> int:
        """Amount for the checkout line item; yearly plans always bill the annual total."""
        if self.is_subscription and self.interval == "year":
            return YEARLY_SUBSCRIPTION_TOTAL
        return int(requested or self.price)


PLAN_CATALOG: Dict[str, Plan] = {
    "starter": Plan("starter", credits=20, price=1190, pix_bonus=5),
    "genius": Plan("genius", credits=100, price=1990, pix_bonus=20),
    "master": Plan("master", credits=400, price=5990, pix_bonus=100),
    "subscription-monthly": Plan(
        "subscription-monthly", credits=200, price=1990, plan_type=SUBSCRIPTION, interval="month"
    ),
    "subscription-yearly": Plan(
        "subscription-yearly", credits=200, price=1490, plan_type=SUBSCRIPTION, interval="year"
    ),
}


def find_plan(plan_id: Optional[str]) -> Optional[Plan]:
    if not plan_id:
        return None
    return PLAN_CATALOG.get(plan_id)


def get_plan(plan_id: Optional[str]) -> Plan:
    """Return the catalog plan or raise ValidationError."""
    plan = find_plan(plan_id)
    if plan is None:
        raise ValidationError("Invalid plan", detail=f"unknown plan_id={plan_id!r}")
    return plan


def clamp_pix_bonus(plan: Plan, requested: Optional[int]) -> int:
    """Bound a requested PIX bonus by the plan's catalog bonus. Subscriptions get none."""
    if plan.is_subscription:
        return 0
    return min(max(int(requested or 0), 0), plan.pix_bonus)


def credits_for(plan_id: Optional[str], *, pix_bonus: Optional[int] = 0, paid_with_pix: bool = False) -> int:
    """Credits to grant for a settled purchase of ``plan_id``."""
    plan = find_plan(plan_id)
    if plan is None:
        return 0
    credits = plan.credits
    if paid_with_pix:
        credits += clamp_pix_bonus(plan, pix_bonus)
    return credits
