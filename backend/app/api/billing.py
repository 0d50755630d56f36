"""Billing API routes - plans, checkout, subscription self-service and webhooks"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from app.core.security import enforce_checkout_rate_limit, require_auth
from app.db.session import get_db
from app.schemas.billing import (
    CheckoutRequest, InvoiceList, PlanChangeOutcome, PlanView, PortalRequest, SubscriptionView
)
from app.services.plan_change_service import (
    cancel_scheduled_downgrade, cancel_subscription_at_period_end, create_portal_session,
    get_subscription_view, list_invoices, list_public_plans, reactivate_subscription,
    request_plan_change
)
from app.services.processor_client import ProcessorClient, get_processor
from app.services.webhook_service import process_webhook

router = APIRouter(prefix="/api", tags=["billing"])
webhook_router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.get("/plans", response_model=List[PlanView])
def get_plans(db: Session = Depends(get_db)):
    """List public plans with their prices (no authentication required)"""
    return list_public_plans(db)


@router.post("/checkout", response_model=PlanChangeOutcome)
def checkout(
    request: Request,
    checkout_request: CheckoutRequest,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db),
    processor: ProcessorClient = Depends(get_processor)
):
    """Start a checkout or change the plan of an existing subscription"""
    enforce_checkout_rate_limit(request, user_id)
    return request_plan_change(
        db,
        user_id,
        checkout_request.price_id,
        processor,
        success_url=checkout_request.success_url,
        cancel_url=checkout_request.cancel_url,
    )


@router.get("/subscription", response_model=SubscriptionView)
def get_subscription(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Get the current subscription (free plan when none)"""
    return get_subscription_view(db, user_id)


@router.post("/subscription/cancel", response_model=SubscriptionView)
def cancel_subscription(
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db),
    processor: ProcessorClient = Depends(get_processor)
):
    return cancel_subscription_at_period_end(db, user_id, processor)


@router.post("/subscription/reactivate", response_model=SubscriptionView)
def reactivate(
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db),
    processor: ProcessorClient = Depends(get_processor)
):
    return reactivate_subscription(db, user_id, processor)


@router.delete("/subscription/scheduled-change", response_model=SubscriptionView)
def delete_scheduled_change(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Keep the current plan instead of the scheduled downgrade"""
    return cancel_scheduled_downgrade(db, user_id)


@router.post("/portal")
def portal(
    request: Request,
    portal_request: Optional[PortalRequest] = None,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db),
    processor: ProcessorClient = Depends(get_processor)
):
    """Get a Stripe billing portal URL"""
    enforce_checkout_rate_limit(request, user_id)
    return_url = portal_request.return_url if portal_request else None
    return {"url": create_portal_session(db, user_id, processor, return_url=return_url)}


@router.get("/invoices", response_model=InvoiceList)
def invoices(
    limit: int = Query(10, ge=1, le=100),
    starting_after: Optional[str] = Query(None),
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db),
    processor: ProcessorClient = Depends(get_processor)
):
    return list_invoices(db, user_id, processor, limit=limit, starting_after=starting_after)


@webhook_router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    processor: ProcessorClient = Depends(get_processor)
):
    """Handle Stripe webhook events

    Note: the body must reach this handler as raw bytes; signature
    verification runs on the exact payload Stripe signed. Processing does
    blocking database and Stripe I/O, so it runs in the threadpool.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    return await run_in_threadpool(process_webhook, payload, sig_header, db, processor)
