"""Gateway webhook receiver.

Answers 200 for every delivery the engine handled, including ones it
dropped as unknown or unlinkable, so the gateway only retries on server
errors. The outcome is returned for operators inspecting deliveries.
"""

import json
import logging

from fastapi import APIRouter, Request

from unitpay_engine.api.dependencies import Engine
from unitpay_engine.api.routes.intents import outcome_response
from unitpay_engine.api.schemas import ReconciliationResponse
from unitpay_engine.reconciliation import ReconciliationStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/paypal", response_model=ReconciliationResponse)
async def paypal_webhook(engine: Engine, request: Request) -> ReconciliationResponse:
    """Receive a PayPal webhook event."""
    body = await request.body()
    try:
        payload = json.loads(body or b"null")
    except ValueError:
        logger.warning("Dropping webhook with malformed JSON body (%d bytes)", len(body))
        return ReconciliationResponse(status=ReconciliationStatus.IGNORED.value, detail="malformed body")

    headers = {key.lower(): value for key, value in request.headers.items()}
    outcome = await engine.handle_gateway_webhook(payload, headers)
    return outcome_response(outcome)
