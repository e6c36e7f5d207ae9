# plans.py
# Fixed plan catalog (amounts in cents). Stripe product/price objects are
# provisioned from this table on first checkout.
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

CURRENCY = "usd"
INTERVAL = "month"
PRODUCT_SLUG = "novamark_ai"
PRODUCT_NAME = "NovaMark AI"


@dataclass(frozen=True)
class Plan:
    key: str
    amount: int
    lookup_key: str
    nickname: str
    trial_days: int = 0


PLANS: Dict[str, Plan] = {
    "starter": Plan("starter", 1399, "novamark_starter_monthly_usd_1399", "Starter Monthly"),
    "pro":     Plan("pro",     2899, "novamark_pro_monthly_usd_2899",     "Pro Monthly", trial_days=7),
    "premium": Plan("premium", 8799, "novamark_premium_monthly_usd_8799", "Premium Monthly"),
}


def get_plan(plan_key) -> Optional[Plan]:
    if not isinstance(plan_key, str):
        return None
    return PLANS.get(plan_key)
