"""Liquidity provider API endpoints."""

from fastapi import APIRouter, status

from unitpay_engine.api.dependencies import Engine
from unitpay_engine.api.schemas import ErrorResponse, LPQuotaUpdate, LPRegister, LPResponse

router = APIRouter(prefix="/lps", tags=["liquidity-providers"])


@router.post(
    "",
    response_model=LPResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}},
)
async def register_lp(engine: Engine, payload: LPRegister) -> LPResponse:
    """Register a liquidity provider with all quota available."""
    lp = await engine.register_lp(
        payload.wallet_address,
        total_quota=payload.total_quota,
        per_transaction_quota=payload.per_transaction_quota,
        fee_rate=payload.fee_rate,
        platforms=payload.supported_platforms,
        paypal_email=payload.paypal_email,
        name=payload.name,
        email=payload.email,
    )
    return LPResponse.model_validate(lp)


@router.get(
    "/{wallet}",
    response_model=LPResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_lp(engine: Engine, wallet: str) -> LPResponse:
    """Get an LP with its current quota."""
    return LPResponse.model_validate(await engine.get_lp(wallet))


@router.put(
    "/{wallet}/quota",
    response_model=LPResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def update_lp_quota(engine: Engine, wallet: str, payload: LPQuotaUpdate) -> LPResponse:
    """Change an LP's total or per-transaction quota."""
    lp = await engine.update_lp_quota(
        wallet,
        total_quota=payload.total_quota,
        per_transaction_quota=payload.per_transaction_quota,
    )
    return LPResponse.model_validate(lp)
