"""Payment intent API endpoints."""

from typing import Annotated

from fastapi import APIRouter, Path, Query, status

from unitpay_engine.api.dependencies import Engine
from unitpay_engine.api.schemas import (
    CancelRequest,
    CaptureRequest,
    ClaimRequest,
    ConfirmRequest,
    ErrorResponse,
    GatewayOrderResponse,
    IntentCreate,
    IntentListResponse,
    IntentResponse,
    MarkPaidRequest,
    ReconciliationResponse,
    TaskPoolItem,
    TaskPoolResponse,
)
from unitpay_engine.reconciliation import ReconciliationOutcome

router = APIRouter(tags=["intents"])

IntentId = Annotated[str, Path(min_length=1, max_length=36)]


def outcome_response(outcome: ReconciliationOutcome) -> ReconciliationResponse:
    return ReconciliationResponse(
        status=outcome.status.value,
        intent_id=outcome.intent_id,
        previous_status=outcome.previous_status,
        new_status=outcome.new_status,
        detail=outcome.detail,
    )


# ============================================================================
# Intent CRUD
# ============================================================================


@router.post(
    "/intents",
    response_model=IntentResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def create_intent(engine: Engine, payload: IntentCreate) -> IntentResponse:
    """Create a payment intent, optionally assigned to an LP."""
    intent = await engine.create_intent(
        user_wallet=payload.user_wallet_address,
        amount=payload.amount,
        platform=payload.platform,
        merchant_info=payload.merchant_info.model_dump(),
        lp_wallet=payload.lp_wallet_address,
        auto_match=payload.auto_match,
        fee_rate=payload.fee_rate,
        currency=payload.currency,
        description=payload.description,
        network=payload.network,
    )
    return IntentResponse.model_validate(intent)


@router.get(
    "/intents/{intent_id}",
    response_model=IntentResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_intent(engine: Engine, intent_id: IntentId) -> IntentResponse:
    """Get a payment intent by ID."""
    return IntentResponse.model_validate(await engine.get_intent(intent_id))


@router.get(
    "/users/{wallet}/intents",
    response_model=IntentListResponse,
    responses={400: {"model": ErrorResponse}},
)
async def list_user_intents(engine: Engine, wallet: str) -> IntentListResponse:
    """List a user's payment intents, newest first."""
    intents = await engine.list_user_intents(wallet)
    return IntentListResponse(
        items=[IntentResponse.model_validate(i) for i in intents],
        total=len(intents),
    )


@router.get(
    "/lps/{wallet}/intents",
    response_model=IntentListResponse,
    responses={400: {"model": ErrorResponse}},
)
async def list_lp_intents(engine: Engine, wallet: str) -> IntentListResponse:
    """List intents currently or previously assigned to an LP."""
    intents = await engine.list_lp_intents(wallet)
    return IntentListResponse(
        items=[IntentResponse.model_validate(i) for i in intents],
        total=len(intents),
    )


@router.get("/task-pool", response_model=TaskPoolResponse)
async def list_task_pool(
    engine: Engine,
    lp_wallet: str | None = None,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
    platform: Annotated[list[str] | None, Query()] = None,
) -> TaskPoolResponse:
    """Browse open intents."""
    entries = await engine.task_pool(lp_wallet=lp_wallet, status=status_filter, platforms=platform)
    return TaskPoolResponse(
        items=[TaskPoolItem.model_validate(e) for e in entries],
        total=len(entries),
    )


# ============================================================================
# Lifecycle transitions
# ============================================================================


@router.post(
    "/intents/{intent_id}/claim",
    response_model=IntentResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def claim_intent(engine: Engine, intent_id: IntentId, payload: ClaimRequest) -> IntentResponse:
    """Claim an intent for an LP, locking its quota."""
    return IntentResponse.model_validate(await engine.claim_intent(intent_id, payload.lp_wallet_address))


@router.post(
    "/intents/{intent_id}/gateway-order",
    response_model=GatewayOrderResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def start_gateway_payment(engine: Engine, intent_id: IntentId) -> GatewayOrderResponse:
    """Create the gateway order for a claimed intent."""
    intent, order = await engine.start_gateway_payment(intent_id)
    return GatewayOrderResponse(
        intent=IntentResponse.model_validate(intent),
        order_id=order.order_id,
        order_status=order.status.value,
        approve_url=order.approve_url,
    )


@router.post(
    "/intents/{intent_id}/gateway-capture",
    response_model=ReconciliationResponse,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def capture_gateway_payment(
    engine: Engine,
    intent_id: IntentId,
    payload: CaptureRequest,
) -> ReconciliationResponse:
    """Capture the payer-approved gateway order."""
    return outcome_response(await engine.capture_gateway_payment(intent_id, payload.order_id))


@router.get(
    "/intents/{intent_id}/gateway-status",
    response_model=ReconciliationResponse,
    responses={404: {"model": ErrorResponse}},
)
async def poll_gateway_status(engine: Engine, intent_id: IntentId) -> ReconciliationResponse:
    """Poll the gateway for the intent's open order and apply the result."""
    return outcome_response(await engine.poll_gateway_status(intent_id))


@router.post(
    "/intents/{intent_id}/client-cancel",
    response_model=ReconciliationResponse,
    responses={404: {"model": ErrorResponse}},
)
async def report_client_cancellation(engine: Engine, intent_id: IntentId) -> ReconciliationResponse:
    """Report that the payer abandoned checkout."""
    return outcome_response(await engine.report_client_cancellation(intent_id))


@router.post(
    "/intents/{intent_id}/mark-paid",
    response_model=IntentResponse,
    responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def mark_paid(engine: Engine, intent_id: IntentId, payload: MarkPaidRequest) -> IntentResponse:
    """LP reports having paid the merchant outside the gateway."""
    intent = await engine.mark_paid(intent_id, payload.lp_wallet_address, payload.payment_reference)
    return IntentResponse.model_validate(intent)


@router.post(
    "/intents/{intent_id}/confirm",
    response_model=IntentResponse,
    responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def confirm_intent(engine: Engine, intent_id: IntentId, payload: ConfirmRequest) -> IntentResponse:
    """User confirms the merchant received payment."""
    intent = await engine.confirm_intent(intent_id, payload.user_wallet_address, payload.proof)
    return IntentResponse.model_validate(intent)


@router.post(
    "/intents/{intent_id}/cancel",
    response_model=IntentResponse,
    responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def cancel_intent(engine: Engine, intent_id: IntentId, payload: CancelRequest) -> IntentResponse:
    """User cancels an intent that is not yet being paid."""
    return IntentResponse.model_validate(await engine.cancel_intent(intent_id, payload.user_wallet_address))
