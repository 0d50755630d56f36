#!/usr/bin/env python3
"""
Catalog seed script - plans, prices and add-ons in the database (and optionally Stripe).

Plans and add-ons come from app.services.plan_catalog; amounts live here.
Without --create-stripe-prices, placeholder Stripe price ids are written and
must be replaced with real ones before checkout works.

Usage:
    python scripts/seed_catalog.py
    python scripts/seed_catalog.py --create-stripe-prices
    python scripts/seed_catalog.py --create-stripe-prices --webhook-url https://api.example.com/api/webhooks/stripe
"""

import argparse
import os
import sys
from typing import Dict, Optional

import stripe

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.core.config import settings  # noqa: E402
from app.db.session import SessionLocal, init_db  # noqa: E402
from app.models import Addon, Plan, Price  # noqa: E402
from app.services.plan_catalog import ADDONS, PLANS  # noqa: E402
from app.services.webhook_service import EVENT_HANDLERS  # noqa: E402

CURRENCY = "brl"

# Amounts in minor units; annual = 10 months
PLAN_PRICES = {
    "PLAN_BASIC": {"month": 2900, "year": 29000},
    "PLAN_PRO": {"month": 7900, "year": 79000},
    "PLAN_ENTERPRISE": {"month": 19900, "year": 199000},
}

ADDON_AMOUNTS = {
    "ADDON_EXTRA_STORAGE_50GB": 4900,
    "ADDON_EXTRA_STORAGE_200GB": 14900,
    "ADDON_PRIORITY_SUPPORT": 9900,
    "ADDON_CUSTOM_DOMAIN": 19900,
    "ADDON_WHITE_LABEL": 49900,
}


def find_or_create_stripe_price(
    name: str,
    description: str,
    amount: int,
    interval: Optional[str],
    existing_products: Dict[str, stripe.Product]
) -> str:
    """Find an active price with the same amount/interval on the named product, or create both"""
    product = existing_products.get(name)
    if product:
        print(f"  ✓ Found existing product: {product.id}")
    else:
        product = stripe.Product.create(name=name, description=description)
        existing_products[name] = product
        print(f"  ➕ Created product: {product.id}")

    for price in stripe.Price.list(product=product.id, active=True, limit=100).data:
        recurring_interval = price.recurring.interval if price.recurring else None
        if price.unit_amount == amount and recurring_interval == interval:
            print(f"  ✓ Found existing price: {price.id}")
            return price.id

    params = {"product": product.id, "unit_amount": amount, "currency": CURRENCY}
    if interval:
        params["recurring"] = {"interval": interval}
    price = stripe.Price.create(**params)
    print(f"  ➕ Created price: {price.id} ({amount / 100:.2f} {CURRENCY.upper()})")
    return price.id


def create_or_update_webhook(webhook_url: str) -> None:
    """Create or update the Stripe webhook endpoint for every handled event."""
    events = sorted(EVENT_HANDLERS)
    existing = stripe.WebhookEndpoint.list(limit=100)
    matching = next((w for w in existing.data if w.url == webhook_url), None)

    if matching:
        print(f"✓ Found webhook: {matching.id}")
        if set(matching.enabled_events) != set(events):
            stripe.WebhookEndpoint.modify(matching.id, enabled_events=events)
            print("✓ Updated events")
        return

    webhook = stripe.WebhookEndpoint.create(url=webhook_url, enabled_events=events)
    print(f"✓ Created webhook: {webhook.id}")
    if getattr(webhook, "secret", None):
        print(f"\n🔑 Add to .env: STRIPE_WEBHOOK_SECRET={webhook.secret}")


def seed(create_stripe_prices: bool) -> None:
    existing_products = {}
    if create_stripe_prices:
        existing_products = {p.name: p for p in stripe.Product.list(limit=100).data}

    db = SessionLocal()
    try:
        print(f"\n{'='*60}\nPlans and Prices\n{'='*60}\n")
        for plan_id, config in PLANS.items():
            plan = db.query(Plan).filter(Plan.id == plan_id).first()
            if not plan:
                plan = Plan(id=plan_id)
                db.add(plan)
            plan.name = config["name"]
            plan.description = config["description"]
            plan.level = config["level"]
            plan.is_active = True
            plan.is_private = config.get("private", False)
            db.flush()
            print(f"{config['name']} (level {config['level']})")

            for interval, amount in PLAN_PRICES.get(plan_id, {}).items():
                if create_stripe_prices:
                    stripe_price_id = find_or_create_stripe_price(
                        config["name"], config["description"], amount, interval, existing_products
                    )
                else:
                    stripe_price_id = f"price_{plan_id.replace('PLAN_', '')}_{interval.upper()}"

                price = db.query(Price).filter(
                    Price.plan_id == plan_id, Price.interval == interval
                ).first()
                if not price:
                    price = Price(plan_id=plan_id, interval=interval)
                    db.add(price)
                price.stripe_price_id = stripe_price_id
                price.interval_count = 1
                price.amount = amount
                price.currency = CURRENCY
                price.is_active = True
                print(f"  ✓ {interval}: {stripe_price_id}")

        print(f"\n{'='*60}\nAdd-ons\n{'='*60}\n")
        for addon_id, config in ADDONS.items():
            amount = ADDON_AMOUNTS[addon_id]
            if create_stripe_prices:
                stripe_price_id = find_or_create_stripe_price(
                    config["name"], config["name"], amount, None, existing_products
                )
            else:
                stripe_price_id = f"price_{addon_id.replace('ADDON_', '')}"

            addon = db.query(Addon).filter(Addon.id == addon_id).first()
            if not addon:
                addon = Addon(id=addon_id)
                db.add(addon)
            addon.name = config["name"]
            addon.level_required = config["level_required"]
            addon.duration_days = config["duration_days"]
            addon.stripe_price_id = stripe_price_id
            addon.amount = amount
            addon.currency = CURRENCY
            addon.is_active = True
            print(f"✓ {config['name']}: {stripe_price_id}")

        db.commit()
        print("\n✓ Catalog seeded")
    finally:
        db.close()


def main():
    parser = argparse.ArgumentParser(description="Seed plans, prices and add-ons")
    parser.add_argument("--create-stripe-prices", action="store_true",
                        help="Find or create matching Stripe products and prices")
    parser.add_argument("--webhook-url", help="Webhook URL to register (optional)")
    args = parser.parse_args()

    if args.create_stripe_prices or args.webhook_url:
        if not settings.STRIPE_SECRET_KEY:
            print("❌ STRIPE_SECRET_KEY not found")
            sys.exit(1)
        stripe.api_key = settings.STRIPE_SECRET_KEY

    init_db()
    seed(args.create_stripe_prices)

    if args.webhook_url:
        create_or_update_webhook(args.webhook_url)


if __name__ == "__main__":
    main()
