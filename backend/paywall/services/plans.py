from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from paywall.core.errors import NotFoundError
from paywall.core.settings import settings


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    price: Decimal
    duration_days: int

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "price": float(self.price),
            "durationDays": self.duration_days,
        }


PLANS: dict[str, Plan] = {
    "monthly": Plan(id="monthly", name="Monthly subscription", price=Decimal("99.00"), duration_days=30),
    "yearly": Plan(id="yearly", name="Yearly subscription", price=Decimal("990.00"), duration_days=365),
}


def get_plan(plan_id: str | None) -> Plan:
    key = (plan_id or "").strip().lower()
    plan = PLANS.get(key)
    if plan is None:
        raise NotFoundError(f"Unknown plan: {plan_id!r}")
    return plan


def find_plan(plan_id: str | None) -> Plan | None:
    return PLANS.get((plan_id or "").strip().lower())


def resolve_plan_id(external_reference: str | None, amount: Decimal | None) -> str:
    """Pick the plan a payment paid for.

    The external reference set at PIX creation wins, then an exact price
    match, then the configured default.
    """
    ref = (external_reference or "").strip().lower()
    if ref.startswith("plan:"):
        ref = ref[len("plan:") :]
    if ref in PLANS:
        return ref
    if amount is not None:
        for plan in PLANS.values():
            if plan.price == amount:
                return plan.id
    return settings.default_plan_id
