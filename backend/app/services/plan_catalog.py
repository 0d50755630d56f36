"""Plan catalog - static plan tiers, features and add-ons

Features are defined in code rather than in the database so new tiers ship
with a deploy. Plan ids must match the rows in the ``plans`` table.
"""
from typing import Dict, List, Optional, Union

# Change types returned by classify_plan_change
UPGRADE = "upgrade"
INTERVAL_CHANGE = "interval_change"
DOWNGRADE = "downgrade"
SAME = "same"

PLANS: Dict[str, Dict] = {
    "PLAN_FREE": {
        "id": "PLAN_FREE",
        "name": "Free",
        "description": "Try the booking platform",
        "level": 1,
        "features": [
            {"name": "Tour packages", "included": True, "limit": 3},
            {"name": "Storage", "included": True, "limit": "1GB"},
            {"name": "Email support", "included": True},
            {"name": "Data export", "included": False},
            {"name": "API access", "included": False},
            {"name": "Priority support", "included": False},
        ],
    },
    "PLAN_BASIC": {
        "id": "PLAN_BASIC",
        "name": "Basic",
        "description": "For independent guides and small agencies",
        "level": 2,
        "features": [
            {"name": "Tour packages", "included": True, "limit": 10},
            {"name": "Storage", "included": True, "limit": "10GB"},
            {"name": "Email support", "included": True},
            {"name": "Data export", "included": True},
            {"name": "API access", "included": False},
            {"name": "Priority support", "included": False},
        ],
    },
    "PLAN_PRO": {
        "id": "PLAN_PRO",
        "name": "Pro",
        "description": "For growing tour operators",
        "level": 3,
        "popular": True,
        "features": [
            {"name": "Tour packages", "included": True, "limit": "Unlimited"},
            {"name": "Storage", "included": True, "limit": "100GB"},
            {"name": "Priority support", "included": True},
            {"name": "Data export", "included": True},
            {"name": "API access", "included": True},
            {"name": "Webhooks", "included": True},
        ],
    },
    "PLAN_ENTERPRISE": {
        "id": "PLAN_ENTERPRISE",
        "name": "Enterprise",
        "description": "For large operators with custom needs",
        "level": 4,
        "features": [
            {"name": "Tour packages", "included": True, "limit": "Unlimited"},
            {"name": "Storage", "included": True, "limit": "Unlimited"},
            {"name": "Priority support", "included": True},
            {"name": "Data export", "included": True},
            {"name": "API access", "included": True},
            {"name": "Webhooks", "included": True},
            {"name": "Guaranteed SLA", "included": True},
            {"name": "Dedicated onboarding", "included": True},
        ],
    },
}

ADDONS: Dict[str, Dict] = {
    "ADDON_EXTRA_STORAGE_50GB": {
        "id": "ADDON_EXTRA_STORAGE_50GB",
        "name": "Extra storage 50GB",
        "level_required": 2,
        "duration_days": None,
    },
    "ADDON_EXTRA_STORAGE_200GB": {
        "id": "ADDON_EXTRA_STORAGE_200GB",
        "name": "Extra storage 200GB",
        "level_required": 3,
        "duration_days": None,
    },
    "ADDON_PRIORITY_SUPPORT": {
        "id": "ADDON_PRIORITY_SUPPORT",
        "name": "Priority support",
        "level_required": 2,
        "duration_days": 30,
    },
    "ADDON_CUSTOM_DOMAIN": {
        "id": "ADDON_CUSTOM_DOMAIN",
        "name": "Custom domain",
        "level_required": 3,
        "duration_days": None,
    },
    "ADDON_WHITE_LABEL": {
        "id": "ADDON_WHITE_LABEL",
        "name": "White label",
        "level_required": 4,
        "duration_days": None,
    },
}

FREE_PLAN_ID = "PLAN_FREE"


def get_plan_config(plan_id: str) -> Optional[Dict]:
    return PLANS.get(plan_id)


def get_plan_features(plan_id: str) -> List[Dict]:
    plan = PLANS.get(plan_id)
    return plan["features"] if plan else []


def has_plan_feature(plan_id: str, feature_name: str) -> bool:
    """Check whether a plan includes a feature"""
    for feature in get_plan_features(plan_id):
        if feature["name"] == feature_name:
            return feature["included"]
    return False


def get_plan_feature_limit(plan_id: str, feature_name: str) -> Optional[Union[int, str]]:
    for feature in get_plan_features(plan_id):
        if feature["name"] == feature_name:
            return feature.get("limit")
    return None


def is_upgrade(from_plan_id: str, to_plan_id: str) -> bool:
    return PLANS[to_plan_id]["level"] > PLANS[from_plan_id]["level"]


def is_downgrade(from_plan_id: str, to_plan_id: str) -> bool:
    return PLANS[to_plan_id]["level"] < PLANS[from_plan_id]["level"]


def get_all_plans() -> List[Dict]:
    """All plans ordered by level"""
    return sorted(PLANS.values(), key=lambda p: p["level"])


def get_public_plans() -> List[Dict]:
    return [p for p in get_all_plans() if not p.get("private", False)]


def classify_plan_change(
    current_level: int,
    new_level: int,
    same_price: bool = False
) -> str:
    """Decide how a requested price relates to the current one.

    Args:
        current_level: Level of the current plan
        new_level: Level of the requested plan
        same_price: True when the requested price is exactly the current price

    Returns:
        One of 'same', 'upgrade', 'downgrade', 'interval_change'. A different
        price at the same level (monthly <-> annual, or a sibling plan at the
        same level) is an interval change and is applied like an upgrade.
    """
    if same_price:
        return SAME
    if new_level > current_level:
        return UPGRADE
    if new_level < current_level:
        return DOWNGRADE
    return INTERVAL_CHANGE


def can_purchase_addon(addon_id: str, plan_level: int) -> bool:
    """Check whether a plan level satisfies an add-on's minimum level"""
    addon = ADDONS.get(addon_id)
    if not addon:
        return False
    return plan_level >= addon["level_required"]
