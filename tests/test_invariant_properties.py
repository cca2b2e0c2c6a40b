"""Property-based tests for settlement invariants.

Random operation sequences are applied to a fresh engine and the quota
ledger is checked after every step: counters stay consistent, locked
quota equals the amounts of the intents that hold it, and no operation
ever leaves a lock behind for an intent that has let go of its LP.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal

from hypothesis import HealthCheck, given, settings, strategies as st
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from unitpay_engine.chain import StubEscrow
from unitpay_engine.database import create_schema, make_session_factory
from unitpay_engine.domain.types import IntentStatus
from unitpay_engine.engine import SettlementEngine
from unitpay_engine.events import InMemoryNotifier
from unitpay_engine.exceptions import SettlementError
from unitpay_engine.gateway import StubGateway
from unitpay_engine.services.fees import quote_fee
from unitpay_engine.services.state_machine import IntentStateMachine

from .conftest import LP_WALLET, MERCHANT, TEST_DATABASE_URL, USER_WALLET

S = IntentStatus

amounts = st.decimals(min_value=Decimal("0.01"), max_value=Decimal("1000000"), places=2)
rates = st.decimals(min_value=Decimal("0"), max_value=Decimal("99.99"), places=2)
statuses = st.sampled_from(list(IntentStatus))

OPERATIONS = ["create", "claim", "gateway", "client_cancel", "mark_paid", "confirm", "cancel", "expire", "sweep"]


class TestFeeProperties:
    @given(amount=amounts, rate=rates)
    def test_total_is_amount_plus_fee(self, amount, rate):
        quote = quote_fee(amount, rate)
        assert quote.total_amount == quote.amount + quote.fee_amount
        assert Decimal("0") <= quote.fee_amount <= quote.amount
        assert quote.fee_amount == quote.fee_amount.quantize(Decimal("0.01"))


class TestStateMachineProperties:
    @given(from_status=statuses, to_status=statuses)
    def test_quota_released_only_by_holders(self, from_status, to_status):
        if IntentStateMachine.releases_quota(from_status, to_status):
            assert from_status in IntentStateMachine.QUOTA_HOLDING
            assert to_status not in IntentStateMachine.QUOTA_HOLDING

    @given(from_status=statuses, to_status=statuses)
    def test_terminal_statuses_are_absorbing(self, from_status, to_status):
        if IntentStateMachine.is_terminal(from_status):
            assert IntentStateMachine.can_transition(from_status, to_status) is False

    @given(steps=st.lists(st.integers(min_value=0, max_value=10), max_size=12))
    def test_random_walk_keeps_lp_rule(self, steps):
        """Walking allowed edges never reaches an LP-requiring status without passing claimed."""
        status = S.CREATED
        seen_claim = False
        for step in steps:
            options = IntentStateMachine.get_next_statuses(status)
            if not options:
                break
            status = options[step % len(options)]
            if status == S.CLAIMED:
                seen_claim = True
            elif status == S.CREATED:
                seen_claim = False
            if IntentStateMachine.requires_lp(status):
                assert seen_claim


async def _run_operations(operations: list[tuple[str, int, Decimal]]) -> None:
    db = create_async_engine(TEST_DATABASE_URL, poolclass=StaticPool, connect_args={"check_same_thread": False})
    await create_schema(db)
    gateway = StubGateway()
    engine = SettlementEngine(
        make_session_factory(db),
        gateway=gateway,
        escrow=StubEscrow(),
        notifier=InMemoryNotifier(),
    )
    try:
        await engine.register_lp(LP_WALLET, total_quota="500", platforms=["PayPal"])
        intent_ids: list[str] = []
        for name, index, amount in operations:
            target = intent_ids[index % len(intent_ids)] if intent_ids else None
            try:
                if name == "create" or target is None:
                    intent = await engine.create_intent(
                        user_wallet=USER_WALLET, amount=amount, platform="PayPal", merchant_info=MERCHANT
                    )
                    intent_ids.append(intent.id)
                elif name == "claim":
                    await engine.claim_intent(target, LP_WALLET)
                elif name == "gateway":
                    await engine.start_gateway_payment(target)
                elif name == "client_cancel":
                    await engine.report_client_cancellation(target)
                elif name == "mark_paid":
                    await engine.mark_paid(target, LP_WALLET, "ref")
                elif name == "confirm":
                    await engine.confirm_intent(target, USER_WALLET)
                elif name == "cancel":
                    await engine.cancel_intent(target, USER_WALLET)
                elif name == "expire":
                    async with engine.uow.begin() as tx:
                        await tx.intents.expire(target)
                elif name == "sweep":
                    await engine.run_recovery_sweep()
            except SettlementError:
                # Rejected operations must leave the ledger untouched
                pass

            assert await engine.verify_quota_invariants() == []
            lp = await engine.get_lp(LP_WALLET)
            holding = Decimal("0")
            for intent_id in intent_ids:
                intent = await engine.get_intent(intent_id)
                if intent.status_enum in IntentStateMachine.QUOTA_HOLDING:
                    holding += intent.amount
                    assert intent.lp_wallet_address == LP_WALLET
            assert lp.locked_quota == holding
            assert lp.total_quota == lp.locked_quota + lp.available_quota
            assert lp.available_quota >= 0
    finally:
        await engine.aclose()
        await db.dispose()


class TestQuotaConservation:
    @settings(max_examples=25, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    @given(
        operations=st.lists(
            st.tuples(
                st.sampled_from(OPERATIONS),
                st.integers(min_value=0, max_value=5),
                st.decimals(min_value=Decimal("1"), max_value=Decimal("300"), places=2),
            ),
            min_size=1,
            max_size=15,
        )
    )
    def test_locked_quota_matches_holding_intents(self, operations):
        asyncio.run(_run_operations(operations))
