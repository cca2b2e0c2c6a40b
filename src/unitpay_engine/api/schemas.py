"""Pydantic schemas for API request/response models."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Liquidity provider schemas
# ============================================================================


class LPRegister(BaseModel):
    """Schema for registering a liquidity provider."""

    wallet_address: str
    total_quota: Decimal = Field(gt=0)
    per_transaction_quota: Decimal | None = Field(default=None, gt=0)
    fee_rate: Decimal | None = Field(default=None, ge=0, lt=100)
    supported_platforms: list[str] = Field(default_factory=lambda: ["PayPal"])
    paypal_email: str | None = None
    name: str | None = None
    email: str | None = None


class LPQuotaUpdate(BaseModel):
    """Schema for changing an LP's capacity."""

    total_quota: Decimal | None = Field(default=None, gt=0)
    per_transaction_quota: Decimal | None = Field(default=None, gt=0)


class LPResponse(BaseModel):
    """Schema for liquidity provider response."""

    model_config = ConfigDict(from_attributes=True)

    wallet_address: str
    name: str | None = None
    paypal_email: str | None = None
    supported_platforms: list[str]
    fee_rate: Decimal
    total_quota: Decimal
    locked_quota: Decimal
    available_quota: Decimal
    per_transaction_quota: Decimal
    is_active: bool
    transaction_count: int
    total_volume: Decimal
    created_at: datetime
    updated_at: datetime


# ============================================================================
# Payment intent schemas
# ============================================================================


class MerchantInfoSchema(BaseModel):
    """Payee identity on the external rail."""

    payee_email: str | None = None
    merchant_id: str | None = None
    name: str | None = None


class IntentCreate(BaseModel):
    """Schema for creating a payment intent."""

    user_wallet_address: str
    amount: Decimal = Field(gt=0)
    platform: str = "PayPal"
    currency: str = "USD"
    merchant_info: MerchantInfoSchema
    description: str | None = Field(default=None, max_length=500)
    lp_wallet_address: str | None = None
    auto_match: bool = False
    fee_rate: Decimal | None = Field(default=None, ge=0, lt=100)
    network: str | None = None


class StatusHistoryItem(BaseModel):
    """One entry of an intent's status history."""

    status: str
    timestamp: datetime
    note: str
    source: str
    cancellation: bool = False


class IntentResponse(BaseModel):
    """Schema for payment intent response."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    amount: Decimal
    currency: str
    fee_rate: Decimal
    fee_amount: Decimal
    total_amount: Decimal
    platform: str
    merchant_info: dict[str, Any]
    description: str | None = None
    user_wallet_address: str
    lp_wallet_address: str | None = None
    status: str
    status_history: list[StatusHistoryItem]
    payment_proof: dict[str, Any] | None = None
    processing_details: dict[str, Any] | None = None
    blockchain_payment_id: str | None = None
    settlement_tx_hash: str | None = None
    network: str | None = None
    expires_at: datetime | None = None
    lock_time: datetime | None = None
    confirmed_at: datetime | None = None
    release_time: datetime | None = None
    withdrawal_time: datetime | None = None
    version: int
    created_at: datetime
    updated_at: datetime


class IntentListResponse(BaseModel):
    """Schema for listing payment intents."""

    items: list[IntentResponse]
    total: int


class TaskPoolItem(BaseModel):
    """Schema for a task pool entry."""

    model_config = ConfigDict(from_attributes=True)

    intent_id: str
    amount: Decimal
    currency: str
    platform: str
    status: str
    user_wallet_address: str
    lp_wallet_address: str | None = None
    expires_at: datetime | None = None
    updated_at: datetime


class TaskPoolResponse(BaseModel):
    """Schema for listing the task pool."""

    items: list[TaskPoolItem]
    total: int


class ClaimRequest(BaseModel):
    """Schema for claiming an intent."""

    lp_wallet_address: str


class GatewayOrderResponse(BaseModel):
    """Schema for a created gateway order."""

    intent: IntentResponse
    order_id: str
    order_status: str
    approve_url: str | None = None


class CaptureRequest(BaseModel):
    """Schema for capturing an approved gateway order."""

    order_id: str


class MarkPaidRequest(BaseModel):
    """Schema for an LP reporting an off-gateway payout."""

    lp_wallet_address: str
    payment_reference: str = Field(min_length=1, max_length=256)


class ConfirmRequest(BaseModel):
    """Schema for a user confirming payment."""

    user_wallet_address: str
    proof: dict[str, Any] | None = None


class CancelRequest(BaseModel):
    """Schema for a user cancelling an intent."""

    user_wallet_address: str


class BlockchainIdRequest(BaseModel):
    """Schema for recording the escrow payment id."""

    blockchain_payment_id: str = Field(min_length=1, max_length=128)


# ============================================================================
# Reconciliation schemas
# ============================================================================


class ReconciliationResponse(BaseModel):
    """Schema for a reconciliation outcome."""

    status: str
    intent_id: str | None = None
    previous_status: str | None = None
    new_status: str | None = None
    detail: str = ""


class ChainStatusResponse(BaseModel):
    """Schema for escrow status of an intent."""

    intent_id: str
    payment_id: str
    method: str
    escrow_status: str | None = None
    is_disputed: bool | None = None
    recipient: str | None = None
    chain_confirmed_at: datetime | None = None
    amount: Decimal | None = None
    revert_cause: str | None = None
    intent_status: str
    last_synced_at: datetime
    from_cache: bool
    stale: bool


class WithdrawalAuthorizationResponse(BaseModel):
    """Schema for a withdrawal decision."""

    intent_id: str
    caller: str
    authorized: bool
    checks: dict[str, bool]
    reasons: list[str]
    withdrawable_at: datetime | None = None
    chain_status: ChainStatusResponse


class WithdrawRequest(BaseModel):
    """Schema for withdrawing escrowed funds."""

    lp_wallet_address: str


class WithdrawResponse(BaseModel):
    """Schema for a completed withdrawal."""

    intent: IntentResponse
    tx_hash: str


# ============================================================================
# Error schemas
# ============================================================================


class ErrorResponse(BaseModel):
    """Schema for error responses."""

    detail: str
    code: str
    errors: list[str] | None = None
