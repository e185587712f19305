"""
Stripe webhook handler for billing events.

SECURITY:
- Every delivery MUST carry a valid Stripe-Signature
- No authentication middleware (webhooks come from Stripe, not users)
- user_id is derived from local mappings, never trusted from the envelope

Responses:
- 200: processed, duplicate, ignored, or unresolved (Stripe stops retrying)
- 400: bad signature or malformed payload (permanent)
- 500: retryable failure (Stripe retries later)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from ledgerlink.api.dependencies.services import get_webhook_reconciler
from ledgerlink.billing.reconciler import WebhookReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def handle_stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
):
    body = await request.body()
    result = await reconciler.handle(body, stripe_signature)
    return result.to_dict()
