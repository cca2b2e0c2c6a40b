"""Pytest fixtures for settlement engine tests."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import timedelta
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from unitpay_engine.chain import StubEscrow
from unitpay_engine.database import create_schema, make_session_factory
from unitpay_engine.domain.types import utcnow
from unitpay_engine.engine import SettlementEngine
from unitpay_engine.engine_config import EngineConfig
from unitpay_engine.events import InMemoryNotifier
from unitpay_engine.gateway import StubGateway
from unitpay_engine.models import LiquidityProvider, PaymentIntent

# In-memory SQLite shared by every session of one test
TEST_DATABASE_URL = "sqlite+aiosqlite://"

USER_WALLET = "0x" + "1" * 40
OTHER_USER_WALLET = "0x" + "2" * 40
LP_WALLET = "0x" + "a" * 40
OTHER_LP_WALLET = "0x" + "b" * 40

MERCHANT = {"payee_email": "shop@merchant.example", "name": "Test Shop"}


def hours_ago(hours: float):
    return utcnow() - timedelta(hours=hours)


@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh database per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(db_engine)


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def gateway() -> StubGateway:
    return StubGateway()


@pytest.fixture
def escrow() -> StubEscrow:
    return StubEscrow(settlement_lock_hours=24)


@pytest.fixture
def notifier() -> InMemoryNotifier:
    return InMemoryNotifier()


@pytest_asyncio.fixture
async def engine(
    session_factory: async_sessionmaker[AsyncSession],
    config: EngineConfig,
    gateway: StubGateway,
    escrow: StubEscrow,
    notifier: InMemoryNotifier,
) -> AsyncGenerator[SettlementEngine, None]:
    """Settlement engine wired to stub adapters."""
    engine = SettlementEngine(
        session_factory,
        config,
        gateway=gateway,
        escrow=escrow,
        notifier=notifier,
    )
    yield engine
    await engine.aclose()


@pytest_asyncio.fixture
async def lp(engine: SettlementEngine) -> LiquidityProvider:
    """An LP with 1000 of quota supporting PayPal and WeChat."""
    return await engine.register_lp(
        LP_WALLET,
        total_quota=Decimal("1000"),
        per_transaction_quota=Decimal("500"),
        fee_rate=Decimal("0.5"),
        platforms=["PayPal", "WeChat"],
        paypal_email="lp@liquidity.example",
        name="Test LP",
    )


IntentFactory = Callable[..., Awaitable[PaymentIntent]]


@pytest.fixture
def make_intent(engine: SettlementEngine) -> IntentFactory:
    """Create an intent with sensible defaults."""

    async def _make(**overrides: Any) -> PaymentIntent:
        params: dict[str, Any] = {
            "user_wallet": USER_WALLET,
            "amount": "100",
            "platform": "PayPal",
            "merchant_info": MERCHANT,
        }
        params.update(overrides)
        return await engine.create_intent(**params)

    return _make


@pytest.fixture
def claimed_intent(engine: SettlementEngine, lp: LiquidityProvider, make_intent: IntentFactory) -> IntentFactory:
    """Create an intent and claim it for the default LP."""

    async def _make(**overrides: Any) -> PaymentIntent:
        intent = await make_intent(**overrides)
        return await engine.claim_intent(intent.id, LP_WALLET)

    return _make


@pytest.fixture
def processing_intent(engine: SettlementEngine, claimed_intent: IntentFactory) -> Callable[..., Awaitable[tuple[PaymentIntent, str]]]:
    """Create a claimed intent and open a gateway order for it."""

    async def _make(**overrides: Any) -> tuple[PaymentIntent, str]:
        intent = await claimed_intent(**overrides)
        intent, order = await engine.start_gateway_payment(intent.id)
        return intent, order.order_id

    return _make
