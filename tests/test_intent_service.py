"""Tests for intent creation and lifecycle transitions."""

import asyncio
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import update

from unitpay_engine.database import create_schema, get_engine, make_session_factory
from unitpay_engine.domain.payloads import ChainProof, ManualProof
from unitpay_engine.domain.types import HistorySource, IntentStatus
from unitpay_engine.engine import SettlementEngine
from unitpay_engine.exceptions import (
    InsufficientQuota,
    IntentNotFound,
    InvalidStateTransition,
    NotAuthorized,
    NotCancellable,
    TaskAlreadyClaimed,
    ValidationError,
)
from unitpay_engine.models import PaymentIntent

from .conftest import LP_WALLET, MERCHANT, OTHER_LP_WALLET, OTHER_USER_WALLET, USER_WALLET

pytestmark = pytest.mark.asyncio


@pytest_asyncio.fixture
async def pooled_engine(tmp_path, config, gateway, escrow, notifier):
    """Engine over a file database, one connection per session."""
    db = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'claims.db'}")
    await create_schema(db)
    engine = SettlementEngine(make_session_factory(db), config, gateway=gateway, escrow=escrow, notifier=notifier)
    yield engine
    await engine.aclose()
    await db.dispose()


class TestCreate:
    async def test_create_computes_fee_and_enters_pool(self, engine, make_intent):
        intent = await make_intent(amount="100")

        assert intent.status == "created"
        assert intent.amount == Decimal("100")
        assert intent.fee_rate == Decimal("0.5")
        assert intent.fee_amount == Decimal("0.50")
        assert intent.total_amount == Decimal("100.50")
        assert intent.user_wallet_address == USER_WALLET
        assert intent.lp_wallet_address is None
        assert intent.expires_at is not None
        assert [e.status for e in intent.history] == [IntentStatus.CREATED]

        pool = await engine.task_pool()
        assert [entry.intent_id for entry in pool] == [intent.id]

    async def test_wallet_is_normalized(self, make_intent):
        intent = await make_intent(user_wallet="0x" + "AB" * 20)
        assert intent.user_wallet_address == "0x" + "ab" * 20

    @pytest.mark.parametrize(
        "overrides",
        [
            {"user_wallet": "not-a-wallet"},
            {"amount": "0"},
            {"amount": "-5"},
            {"amount": "abc"},
            {"platform": "Venmo"},
            {"currency": "DOLLARS"},
            {"merchant_info": {}},
            {"merchant_info": {"payee_email": "someone@personal.example.com"}},
            {"platform": "WeChat", "merchant_info": None},
        ],
    )
    async def test_invalid_input_rejected(self, engine, make_intent, overrides):
        with pytest.raises(ValidationError):
            await make_intent(**overrides)
        assert await engine.list_user_intents(USER_WALLET) == []

    async def test_explicit_fee_rate_wins(self, make_intent):
        intent = await make_intent(amount="200", fee_rate="1")
        assert intent.fee_amount == Decimal("2.00")
        assert intent.total_amount == Decimal("202.00")

    async def test_create_with_lp_claims_atomically(self, engine, lp, make_intent):
        intent = await make_intent(amount="100", lp_wallet=LP_WALLET)

        assert intent.status == "claimed"
        assert intent.lp_wallet_address == LP_WALLET
        lp = await engine.get_lp(LP_WALLET)
        assert lp.locked_quota == Decimal("100")

    async def test_create_with_lp_lacking_quota_creates_nothing(self, engine, lp, make_intent):
        with pytest.raises(InsufficientQuota):
            await make_intent(amount="800", lp_wallet=LP_WALLET)
        assert await engine.list_user_intents(USER_WALLET) == []

    async def test_auto_match_picks_cheapest_capable_lp(self, engine, lp, make_intent):
        await engine.register_lp(OTHER_LP_WALLET, total_quota="5000", fee_rate="0.2")

        intent = await make_intent(amount="100", auto_match=True)

        assert intent.status == "claimed"
        assert intent.lp_wallet_address == OTHER_LP_WALLET
        assert intent.fee_rate == Decimal("0.2")

    async def test_auto_match_without_candidate_stays_created(self, engine, make_intent):
        intent = await make_intent(amount="100", auto_match=True)
        assert intent.status == "created"
        assert intent.lp_wallet_address is None

    async def test_lp_and_auto_match_are_exclusive(self, lp, make_intent):
        with pytest.raises(ValidationError):
            await make_intent(lp_wallet=LP_WALLET, auto_match=True)


class TestClaim:
    async def test_claim_locks_quota_and_assigns_lp(self, engine, lp, make_intent):
        intent = await make_intent(amount="100")

        claimed = await engine.claim_intent(intent.id, LP_WALLET)

        assert claimed.status == "claimed"
        assert claimed.lp_wallet_address == LP_WALLET
        assert claimed.lock_time is not None
        assert claimed.version == intent.version + 1
        lp = await engine.get_lp(LP_WALLET)
        assert lp.available_quota == Decimal("900")

    async def test_second_claim_loses(self, engine, lp, make_intent):
        await engine.register_lp(OTHER_LP_WALLET, total_quota="1000")
        intent = await make_intent()
        await engine.claim_intent(intent.id, LP_WALLET)

        with pytest.raises(TaskAlreadyClaimed):
            await engine.claim_intent(intent.id, OTHER_LP_WALLET)

        other = await engine.get_lp(OTHER_LP_WALLET)
        assert other.locked_quota == Decimal("0")

    async def test_concurrent_claims_lock_once(self, pooled_engine):
        engine = pooled_engine
        await engine.register_lp(LP_WALLET, total_quota="1000")
        await engine.register_lp(OTHER_LP_WALLET, total_quota="1000")
        intent = await engine.create_intent(
            user_wallet=USER_WALLET, amount="100", platform="PayPal", merchant_info=MERCHANT
        )

        results = await asyncio.gather(
            engine.claim_intent(intent.id, LP_WALLET),
            engine.claim_intent(intent.id, OTHER_LP_WALLET),
            return_exceptions=True,
        )

        won = [r for r in results if isinstance(r, PaymentIntent)]
        lost = [r for r in results if isinstance(r, TaskAlreadyClaimed)]
        assert len(won) == 1
        assert len(lost) == 1

        current = await engine.get_intent(intent.id)
        assert current.status == "claimed"
        assert current.lp_wallet_address == won[0].lp_wallet_address
        assert current.version == intent.version + 1
        locked = [(await engine.get_lp(w)).locked_quota for w in (LP_WALLET, OTHER_LP_WALLET)]
        assert sum(locked) == Decimal("100")
        assert await engine.verify_quota_invariants() == []

    async def test_claim_with_insufficient_quota_leaves_intent_created(self, engine, lp, make_intent):
        await engine.update_lp_quota(LP_WALLET, total_quota="50")
        intent = await make_intent(amount="100")

        with pytest.raises(InsufficientQuota):
            await engine.claim_intent(intent.id, LP_WALLET)

        current = await engine.get_intent(intent.id)
        assert current.status == "created"
        assert current.lp_wallet_address is None
        assert current.version == intent.version

    async def test_claim_rejects_unsupported_platform(self, engine, make_intent):
        await engine.register_lp(OTHER_LP_WALLET, total_quota="1000", platforms=["Alipay"])
        intent = await make_intent()

        with pytest.raises(ValidationError):
            await engine.claim_intent(intent.id, OTHER_LP_WALLET)

    async def test_claim_unknown_intent(self, engine, lp):
        with pytest.raises(IntentNotFound):
            await engine.claim_intent("missing", LP_WALLET)

    async def test_stale_version_write_is_rejected(self, engine, lp, make_intent, session_factory):
        intent = await make_intent()
        async with engine.uow.begin() as tx:
            loaded = await tx.intents.get(intent.id)
            # A concurrent writer bumps the version underneath us
            await tx.session.execute(
                update(PaymentIntent)
                .where(PaymentIntent.id == intent.id)
                .values(version=loaded.version + 5)
                .execution_options(synchronize_session=False)
            )
            with pytest.raises(InvalidStateTransition):
                await tx.intents._transition(
                    loaded,
                    IntentStatus.CANCELLED,
                    source=HistorySource.USER,
                    note="stale",
                    now=loaded.updated_at,
                )


class TestPaidAndConfirmed:
    async def test_lp_marks_paid_with_manual_reference(self, engine, claimed_intent):
        intent = await claimed_intent()

        paid = await engine.mark_paid(intent.id, LP_WALLET, "WX-RECEIPT-42")

        assert paid.status == "paid"
        assert paid.proof == ManualProof(reference="WX-RECEIPT-42")

    async def test_only_assigned_lp_marks_paid(self, engine, claimed_intent):
        intent = await claimed_intent()
        with pytest.raises(NotAuthorized):
            await engine.mark_paid(intent.id, OTHER_LP_WALLET, "ref")

    async def test_empty_proof_rejected(self, engine, claimed_intent):
        intent = await claimed_intent()
        with pytest.raises(ValidationError):
            await engine.mark_paid(intent.id, LP_WALLET, "   ")

    async def test_user_confirms_and_quota_released(self, engine, claimed_intent):
        intent = await claimed_intent(amount="100")
        await engine.mark_paid(intent.id, LP_WALLET, "ref")

        confirmed = await engine.confirm_intent(intent.id, USER_WALLET, {"kind": "chain", "tx_hash": "0xabc"})

        assert confirmed.status == "confirmed"
        assert confirmed.confirmed_at is not None
        assert confirmed.release_time is not None
        assert confirmed.proof == ChainProof(tx_hash="0xabc")
        lp = await engine.get_lp(LP_WALLET)
        assert lp.locked_quota == Decimal("0")
        assert lp.available_quota == Decimal("1000")
        assert lp.transaction_count == 1
        assert lp.total_volume == Decimal("100")

    async def test_only_owner_confirms(self, engine, claimed_intent):
        intent = await claimed_intent()
        await engine.mark_paid(intent.id, LP_WALLET, "ref")
        with pytest.raises(NotAuthorized):
            await engine.confirm_intent(intent.id, OTHER_USER_WALLET)

    async def test_confirm_from_created_rejected(self, engine, make_intent):
        intent = await make_intent()
        with pytest.raises(InvalidStateTransition):
            await engine.confirm_intent(intent.id, USER_WALLET)

        current = await engine.get_intent(intent.id)
        assert current.status == "created"
        assert current.version == intent.version
        assert len(current.status_history) == len(intent.status_history)

    async def test_out_of_order_settle_changes_nothing(self, engine, claimed_intent):
        intent = await claimed_intent(amount="100")

        with pytest.raises(InvalidStateTransition):
            async with engine.uow.begin() as tx:
                await tx.intents.settle(intent.id, tx_hash="0xfeed")

        current = await engine.get_intent(intent.id)
        assert current.status == "claimed"
        assert current.version == intent.version
        assert len(current.status_history) == len(intent.status_history)
        lp = await engine.get_lp(LP_WALLET)
        assert lp.locked_quota == Decimal("100")
        assert await engine.verify_quota_invariants() == []

    async def test_confirmed_intent_can_still_fail(self, engine, claimed_intent):
        intent = await claimed_intent(amount="100")
        await engine.mark_paid(intent.id, LP_WALLET, "ref")
        await engine.confirm_intent(intent.id, USER_WALLET)

        async with engine.uow.begin() as tx:
            failed = await tx.intents.fail(intent.id, reason="Release abandoned", source=HistorySource.SYSTEM)

        assert failed.status == "failed"
        assert [e.status.value for e in failed.history][-2:] == ["confirmed", "failed"]
        lp = await engine.get_lp(LP_WALLET)
        assert lp.locked_quota == Decimal("0")
        assert await engine.verify_quota_invariants() == []

    async def test_user_cannot_cancel_confirmed(self, engine, claimed_intent):
        intent = await claimed_intent()
        await engine.mark_paid(intent.id, LP_WALLET, "ref")
        await engine.confirm_intent(intent.id, USER_WALLET)

        with pytest.raises(NotCancellable):
            await engine.cancel_intent(intent.id, USER_WALLET)

    async def test_history_is_append_only(self, engine, claimed_intent):
        intent = await claimed_intent()
        await engine.mark_paid(intent.id, LP_WALLET, "ref")
        confirmed = await engine.confirm_intent(intent.id, USER_WALLET)

        statuses = [e.status.value for e in confirmed.history]
        assert statuses == ["created", "claimed", "paid", "confirmed"]
        assert confirmed.history[-1].source == HistorySource.USER


class TestCancel:
    async def test_cancel_created(self, engine, make_intent):
        intent = await make_intent()
        cancelled = await engine.cancel_intent(intent.id, USER_WALLET)

        assert cancelled.status == "cancelled"
        assert cancelled.history[-1].cancellation is True
        assert await engine.task_pool() == []

    async def test_cancel_claimed_releases_quota(self, engine, claimed_intent):
        intent = await claimed_intent(amount="100")
        await engine.cancel_intent(intent.id, USER_WALLET)

        lp = await engine.get_lp(LP_WALLET)
        assert lp.locked_quota == Decimal("0")

    async def test_cancel_processing_not_allowed(self, engine, processing_intent):
        intent, _ = await processing_intent()
        with pytest.raises(NotCancellable):
            await engine.cancel_intent(intent.id, USER_WALLET)

    async def test_only_owner_cancels(self, engine, make_intent):
        intent = await make_intent()
        with pytest.raises(NotAuthorized):
            await engine.cancel_intent(intent.id, OTHER_USER_WALLET)


class TestRollback:
    async def test_rollback_clears_lp_and_releases_quota(self, engine, claimed_intent):
        intent = await claimed_intent(amount="100")

        async with engine.uow.begin() as tx:
            rolled_back, changed = await tx.intents.rollback(
                intent.id, reason="LP gave up", source=HistorySource.LP
            )

        assert changed is True
        assert rolled_back.status == "created"
        assert rolled_back.lp_wallet_address is None
        assert rolled_back.lock_time is None
        lp = await engine.get_lp(LP_WALLET)
        assert lp.locked_quota == Decimal("0")

        # Claimable again
        reclaimed = await engine.claim_intent(intent.id, LP_WALLET)
        assert reclaimed.status == "claimed"

    async def test_rollback_of_created_is_no_op(self, engine, make_intent):
        intent = await make_intent()
        async with engine.uow.begin() as tx:
            same, changed = await tx.intents.rollback(intent.id, reason="noop", source=HistorySource.SYSTEM)
        assert changed is False
        assert same.version == intent.version


class TestBlockchainPaymentId:
    async def test_assign_once(self, engine, make_intent):
        intent = await make_intent()
        updated = await engine.assign_blockchain_payment_id(intent.id, "pay-1")
        assert updated.blockchain_payment_id == "pay-1"

        # Re-sending the same id is accepted
        again = await engine.assign_blockchain_payment_id(intent.id, "pay-1")
        assert again.version == updated.version

        with pytest.raises(ValidationError):
            await engine.assign_blockchain_payment_id(intent.id, "pay-2")

    async def test_id_is_unique_across_intents(self, engine, make_intent):
        first = await make_intent()
        second = await make_intent()
        await engine.assign_blockchain_payment_id(first.id, "pay-1")

        with pytest.raises(ValidationError):
            await engine.assign_blockchain_payment_id(second.id, "pay-1")


class TestQueries:
    async def test_list_by_party(self, engine, lp, make_intent):
        mine = await make_intent(lp_wallet=LP_WALLET)
        await make_intent(user_wallet=OTHER_USER_WALLET, merchant_info=MERCHANT)

        assert [i.id for i in await engine.list_user_intents(USER_WALLET)] == [mine.id]
        assert [i.id for i in await engine.list_lp_intents(LP_WALLET)] == [mine.id]

    async def test_task_pool_filters(self, engine, lp, make_intent):
        open_intent = await make_intent()
        claimed = await make_intent(lp_wallet=LP_WALLET)
        wechat = await make_intent(platform="WeChat", merchant_info={"merchant_id": "wx-1"})

        assert {e.intent_id for e in await engine.task_pool(status="created")} == {open_intent.id, wechat.id}
        assert [e.intent_id for e in await engine.task_pool(lp_wallet=LP_WALLET)] == [claimed.id]
        assert [e.intent_id for e in await engine.task_pool(platforms=["WeChat"])] == [wechat.id]

    async def test_rebuild_task_pool(self, engine, lp, make_intent):
        await make_intent()
        await make_intent(lp_wallet=LP_WALLET)

        assert await engine.rebuild_task_pool() == 2
        assert len(await engine.task_pool()) == 2
