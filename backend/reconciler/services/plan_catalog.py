"""Plan catalogue and plan inference from paid amounts."""

from decimal import Decimal
from typing import Optional

from reconciler.models.user import UserRole
from reconciler.schemas.plan import FREE_PLAN, SubscriptionPlan

# Monthly plans per audience
SUBSCRIPTION_PLANS: list[SubscriptionPlan] = [
    SubscriptionPlan(id="basic", name="Basic", role=UserRole.STUDENT, price=Decimal("5.00")),
    SubscriptionPlan(id="pro", name="Pro", role=UserRole.STUDENT, price=Decimal("15.00")),
    SubscriptionPlan(id="growth", name="Growth", role=UserRole.COMPANY, price=Decimal("15.00")),
    SubscriptionPlan(
        id="enterprise", name="Enterprise", role=UserRole.COMPANY, price=Decimal("25.00")
    ),
]

PLAN_LOOKUP: dict[str, SubscriptionPlan] = {plan.id: plan for plan in SUBSCRIPTION_PLANS}


def plans_for_role(role: UserRole) -> list[SubscriptionPlan]:
    """Plans sold to an audience, cheapest first."""
    return sorted(
        (plan for plan in SUBSCRIPTION_PLANS if plan.role == role),
        key=lambda plan: plan.price,
    )


def infer_plan(role: UserRole, amount: Decimal) -> Optional[str]:
    """Guess the plan a legacy transaction paid for from its amount.

    Returns None when the amount matches no plan for the role.
    """
    amount = Decimal(str(amount)).quantize(Decimal("0.01"))
    for plan in plans_for_role(role):
        if plan.price == amount:
            return plan.id
    return None


def is_paid_plan(plan: Optional[str]) -> bool:
    return bool(plan and plan.strip() and plan != FREE_PLAN)
