"""Stripe Webhook Routes - credit pack purchases.

POST /api/webhooks/stripe

A completed checkout session whose metadata carries type=credit_purchase
grants the pack's credits to metadata.user_id. The checkout session id is the
purchase reference, so Stripe redeliveries never grant twice.
"""
from fastapi import APIRouter, HTTPException, Request, Depends
import json
import logging
import os
import stripe

from middleware import get_credit_services
from services.credit_metering import PURCHASE_ACTION_KEY
from services.ledger_lock import ConcurrencyConflict
from services.ledger_store import PersistenceError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def _parse_event(payload: bytes, signature: str) -> dict:
    webhook_secret = os.getenv("STRIPE_WEBHOOK_SECRET")
    if webhook_secret:
        # Raises on a bad signature; the verified body is then read as plain JSON
        stripe.Webhook.construct_event(payload, signature, webhook_secret)
    elif os.getenv("ENVIRONMENT", "development") == "production":
        raise RuntimeError("STRIPE_WEBHOOK_SECRET is not configured")
    else:
        logger.warning("STRIPE_WEBHOOK_SECRET not set - skipping signature verification")
    return json.loads(payload)


@router.post("/stripe")
async def handle_stripe_webhook(request: Request, services=Depends(get_credit_services)):
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        event = _parse_event(payload, signature)
    except stripe.SignatureVerificationError as e:
        logger.error(f"Stripe webhook signature verification failed: {e}")
        raise HTTPException(status_code=400, detail="Invalid signature")
    except ValueError:
        logger.error("Invalid Stripe webhook payload")
        raise HTTPException(status_code=400, detail="Invalid payload")
    except RuntimeError as e:
        logger.error(str(e))
        raise HTTPException(status_code=503, detail="Webhook not configured")

    event_type = event.get("type")
    session = (event.get("data") or {}).get("object") or {}
    metadata = session.get("metadata") or {}

    if event_type != "checkout.session.completed" or metadata.get("type") != PURCHASE_ACTION_KEY:
        logger.info(f"Ignoring Stripe event {event.get('id')} ({event_type})")
        return {"status": "ignored", "event_type": event_type}

    if session.get("payment_status") not in (None, "paid", "no_payment_required"):
        logger.warning(f"Checkout session {session.get('id')} completed unpaid ({session.get('payment_status')})")
        return {"status": "ignored", "reason": "unpaid"}

    user_id = metadata.get("user_id")
    pack_id = metadata.get("pack_id")
    session_id = session.get("id")
    if not user_id or not pack_id or not session_id:
        logger.error(f"Credit purchase event {event.get('id')} missing user_id/pack_id/session id")
        raise HTTPException(status_code=400, detail="Missing purchase metadata")

    try:
        entry = await services.metering.grant_purchase(user_id, pack_id, session_id)
    except ValueError as e:
        logger.error(f"Credit purchase {session_id} rejected: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except (ConcurrencyConflict, PersistenceError) as e:
        # Non-2xx so Stripe redelivers
        logger.error(f"Credit purchase {session_id} for user {user_id} not recorded: {e}")
        raise HTTPException(status_code=503, detail="Failed to record purchase")

    return {"status": "success", "event_type": event_type, "ledger_entry_id": entry.id}
