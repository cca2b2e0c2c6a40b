"""Escrow status and withdrawal endpoints."""

from typing import Annotated

from fastapi import APIRouter, Path, Query

from unitpay_engine.api.dependencies import Engine
from unitpay_engine.api.schemas import (
    BlockchainIdRequest,
    ChainStatusResponse,
    ErrorResponse,
    IntentResponse,
    WithdrawalAuthorizationResponse,
    WithdrawRequest,
    WithdrawResponse,
)

router = APIRouter(prefix="/intents", tags=["chain"])

IntentId = Annotated[str, Path(min_length=1, max_length=36)]


@router.put(
    "/{intent_id}/blockchain-id",
    response_model=IntentResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def assign_blockchain_payment_id(
    engine: Engine,
    intent_id: IntentId,
    payload: BlockchainIdRequest,
) -> IntentResponse:
    """Record the on-chain payment id the escrow is keyed by."""
    intent = await engine.assign_blockchain_payment_id(intent_id, payload.blockchain_payment_id)
    return IntentResponse.model_validate(intent)


@router.get(
    "/{intent_id}/chain-status",
    response_model=ChainStatusResponse,
    responses={404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def sync_chain_status(
    engine: Engine,
    intent_id: IntentId,
    force: Annotated[bool, Query()] = False,
) -> ChainStatusResponse:
    """Escrow status for an intent, served from cache while fresh."""
    chain_status = await engine.sync_chain_status(intent_id, force=force)
    return ChainStatusResponse.model_validate(chain_status.to_dict())


@router.get(
    "/{intent_id}/withdrawal-authorization",
    response_model=WithdrawalAuthorizationResponse,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def authorize_withdrawal(
    engine: Engine,
    intent_id: IntentId,
    wallet: Annotated[str, Query(min_length=1)],
) -> WithdrawalAuthorizationResponse:
    """Evaluate every withdrawal precondition against fresh escrow state."""
    decision = await engine.authorize_withdrawal(intent_id, wallet)
    return WithdrawalAuthorizationResponse(
        intent_id=decision.intent_id,
        caller=decision.caller,
        authorized=decision.authorized,
        checks=decision.checks,
        reasons=decision.reasons,
        withdrawable_at=decision.withdrawable_at,
        chain_status=ChainStatusResponse.model_validate(decision.status.to_dict()),
    )


@router.post(
    "/{intent_id}/withdraw",
    response_model=WithdrawResponse,
    responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def withdraw(engine: Engine, intent_id: IntentId, payload: WithdrawRequest) -> WithdrawResponse:
    """Release escrowed funds to the LP and settle the intent."""
    intent, tx_hash = await engine.withdraw(intent_id, payload.lp_wallet_address)
    return WithdrawResponse(intent=IntentResponse.model_validate(intent), tx_hash=tx_hash)
