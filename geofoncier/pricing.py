"""Subscription pricing (XAF).

Owners pay a base fee plus a per-m² rate that drops as the declared area grows;
annual billing is twelve months with a 10% discount. Clients pay a flat fee
by zone. All amounts are rounded up to the whole franc.
"""

from dataclasses import dataclass
from decimal import ROUND_CEILING, Decimal

from .errors import ValidationError
from .schemas import BillingPeriod, PlanType

CURRENCY = "XAF"
BASE_PRICE = Decimal("1000")
ANNUAL_FACTOR = Decimal("12") * Decimal("0.9")


@dataclass(frozen=True)
class Tier:
    name: str
    max_area: Decimal | None  # inclusive upper bound; None for the last tier
    rate: Decimal
    description: str


OWNER_TIERS = (
    Tier("Tier 1 (0-1000 m²)", Decimal("1000"), Decimal("2"), "Standard rate for small parcels"),
    Tier("Tier 2 (1001-5000 m²)", Decimal("5000"), Decimal("1.5"), "Reduced rate for medium parcels"),
    Tier("Tier 3 (5001-10000 m²)", Decimal("10000"), Decimal("1"), "Preferential rate for large parcels"),
    Tier("Tier 4 (over 10000 m²)", None, Decimal("0.5"), "Lowest rate for very large parcels"),
)

CLIENT_PLANS = {
    "africa": {BillingPeriod.MONTHLY: Decimal("5000"), BillingPeriod.ANNUAL: Decimal("50000")},
    "world": {BillingPeriod.MONTHLY: Decimal("50000"), BillingPeriod.ANNUAL: Decimal("500000")},
}

CLIENT_PLAN_TYPES = {
    PlanType.CLIENT_MONTHLY_AFRICA: ("africa", BillingPeriod.MONTHLY),
    PlanType.CLIENT_ANNUAL_AFRICA: ("africa", BillingPeriod.ANNUAL),
    PlanType.CLIENT_MONTHLY_WORLD: ("world", BillingPeriod.MONTHLY),
    PlanType.CLIENT_ANNUAL_WORLD: ("world", BillingPeriod.ANNUAL),
}


def _ceil(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_CEILING))


def tier_for(area_m2: Decimal) -> Tier:
    for tier in OWNER_TIERS:
        if tier.max_area is None or area_m2 <= tier.max_area:
            return tier
    raise AssertionError("last tier is unbounded")


def owner_pricing(area_m2) -> dict:
    """Monthly and annual owner prices for a declared area."""
    area = Decimal(str(area_m2))
    if area <= 0:
        raise ValidationError("Declared area must be positive")

    tier = tier_for(area)
    monthly_raw = BASE_PRICE + area * tier.rate
    annual_raw = monthly_raw * ANNUAL_FACTOR
    monthly = _ceil(monthly_raw)
    return {
        "area_m2": float(area),
        "tier": tier.name,
        "tier_description": tier.description,
        "base_price": int(BASE_PRICE),
        "price_per_m2": float(tier.rate),
        "monthly_price": monthly,
        "annual_price": _ceil(annual_raw),
        "annual_savings": _ceil(monthly_raw * 12 - annual_raw),
        "currency": CURRENCY,
        "calculation": f"{BASE_PRICE} XAF + ({area} m² × {tier.rate} XAF/m²) = {monthly} XAF/month",
    }


def client_pricing() -> dict:
    plans = {}
    for zone, prices in CLIENT_PLANS.items():
        monthly = prices[BillingPeriod.MONTHLY]
        annual = prices[BillingPeriod.ANNUAL]
        plans[zone] = {
            "monthly": {"price": int(monthly), "currency": CURRENCY},
            "annual": {"price": int(annual), "currency": CURRENCY, "savings": int(monthly * 12 - annual)},
        }
    return plans


def simulate(user_type: str, period: BillingPeriod, area_m2=None, zone: str | None = None) -> dict:
    """Price a hypothetical subscription."""
    period = BillingPeriod(period)
    if user_type == "owner":
        if area_m2 is None:
            raise ValidationError("area_m2 is required to price an owner subscription")
        pricing = owner_pricing(area_m2)
        amount = pricing["annual_price"] if period == BillingPeriod.ANNUAL else pricing["monthly_price"]
        return {"user_type": user_type, "period": period.value, "amount": amount, "currency": CURRENCY, "details": pricing}

    if user_type == "client":
        zone = zone or "africa"
        if zone not in CLIENT_PLANS:
            raise ValidationError(f"Unknown zone: {zone}")
        amount = int(CLIENT_PLANS[zone][period])
        return {"user_type": user_type, "period": period.value, "zone": zone, "amount": amount, "currency": CURRENCY}

    raise ValidationError(f"Unknown user type: {user_type}")


def plan_amount(plan_type: PlanType, period: BillingPeriod, area_m2=None) -> tuple[Decimal, str | None]:
    """Amount due for a plan, plus the owner tier name when the price depends on area."""
    plan_type = PlanType(plan_type)
    if plan_type == PlanType.OWNER_AREA:
        if area_m2 is None:
            raise ValidationError("declared_area_m2 is required for the owner_area plan")
        pricing = owner_pricing(area_m2)
        key = "annual_price" if BillingPeriod(period) == BillingPeriod.ANNUAL else "monthly_price"
        return Decimal(pricing[key]), pricing["tier"]

    zone, plan_period = CLIENT_PLAN_TYPES[plan_type]
    return CLIENT_PLANS[zone][plan_period], None
