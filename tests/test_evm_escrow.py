"""Tests for the web3 escrow client.

No node is contacted: the contract object is replaced with fakes that
answer (or revert) the way a JSON-RPC node would.
"""

import asyncio
from decimal import Decimal
from types import SimpleNamespace

import pytest
from web3.exceptions import BadFunctionCallOutput, ContractLogicError

from unitpay_engine.chain import EscrowStatus, EvmEscrowClient, RevertCause
from unitpay_engine.chain.evm import revert_message
from unitpay_engine.config import Settings
from unitpay_engine.engine_config import ChainConfig, EngineConfig
from unitpay_engine.exceptions import EscrowReverted, ExternalUnavailable, Unreconcilable

pytestmark = pytest.mark.asyncio

CONTRACT = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
# Well-known local development key
SIGNER_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
SIGNER_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
OWNER = "0x" + "1" * 40


class FakeCall:
    """A bound contract function whose ``call`` resolves to ``result`` or raises it."""

    def __init__(self, result, delay: float = 0):
        self.result = result
        self.delay = delay

    async def call(self, *args, **kwargs):
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class FakeContract:
    def __init__(self, views=None, withdraw=None):
        self.views = views or {}
        self.requested: list[str] = []
        self.functions = SimpleNamespace(withdrawPayment=lambda payment_id: withdraw)

    def get_function_by_name(self, name):
        self.requested.append(name)
        result = self.views.get(name, ContractLogicError("execution reverted"))
        return lambda payment_id: result if isinstance(result, FakeCall) else FakeCall(result)


def make_client(**config) -> EvmEscrowClient:
    params = {"client": "evm", "rpc_url": "http://127.0.0.1:8545", "contract_address": CONTRACT}
    params.update(config)
    return EvmEscrowClient(ChainConfig(**params))


def status_tuple(status=2, disputed=False, recipient=SIGNER_ADDRESS):
    return (status, disputed, OWNER, recipient, 1_500_000, 1_700_000_000, 1_700_000_000, 1_700_003_600)


class TestRevertMessage:
    async def test_strips_node_prefix(self):
        assert revert_message(ContractLogicError("execution reverted: Payment not found")) == "Payment not found"

    async def test_plain_message(self):
        assert revert_message(ContractLogicError("not owner")) == "not owner"


class TestStatusView:
    async def test_configured_status_view(self):
        client = make_client()
        client.contract = FakeContract(views={"getPaymentStatus": status_tuple()})

        record = await client.get_payment_status("pay-1")

        assert record.status == EscrowStatus.CONFIRMED
        assert record.is_disputed is False
        assert record.recipient == SIGNER_ADDRESS.lower()
        assert record.amount == Decimal("1.5")
        assert record.release_time is not None
        assert record.found is True
        assert client.contract.requested == ["getPaymentStatus"]

    async def test_older_view_name_by_configuration(self):
        client = make_client(status_function="getPayment")
        client.contract = FakeContract(
            views={"getPayment": status_tuple(status=1), "getPaymentStatus": status_tuple(status=2)}
        )

        record = await client.get_payment_status("pay-1")

        assert record.status == EscrowStatus.LOCKED
        assert client.contract.requested == ["getPayment"]

    async def test_other_view_is_never_tried(self):
        client = make_client()
        client.contract = FakeContract(
            views={
                "getPaymentStatus": ContractLogicError("execution reverted: Paused"),
                "getPayment": status_tuple(),
            }
        )

        with pytest.raises(Unreconcilable) as exc_info:
            await client.get_payment_status("pay-1")

        assert "Paused" in str(exc_info.value)
        assert client.contract.requested == ["getPaymentStatus"]

    async def test_not_found_revert_is_empty_record(self):
        client = make_client()
        client.contract = FakeContract(
            views={"getPaymentStatus": ContractLogicError("execution reverted: Payment not found")}
        )

        record = await client.get_payment_status("pay-1")

        assert record.status is None
        assert record.found is False

    async def test_view_without_data_is_unreconcilable(self):
        client = make_client(status_function="getPayment")
        client.contract = FakeContract(views={"getPayment": BadFunctionCallOutput("Could not decode output")})

        with pytest.raises(Unreconcilable) as exc_info:
            await client.get_payment_status("pay-1")

        assert "getPayment" in str(exc_info.value)

    async def test_timeout_is_unavailable(self):
        client = make_client(timeout_seconds=0.01)
        client.contract = FakeContract(views={"getPaymentStatus": FakeCall(status_tuple(), delay=1)})

        with pytest.raises(ExternalUnavailable):
            await client.get_payment_status("pay-1")

    async def test_unknown_view_name_rejected_at_configuration(self):
        with pytest.raises(ValueError):
            make_client(status_function="paymentInfo")


class TestDryRun:
    async def test_successful_simulation(self):
        client = make_client()
        client.contract = FakeContract(withdraw=FakeCall(True))

        result = await client.dry_run_withdraw("pay-1", SIGNER_ADDRESS)

        assert result.ok is True

    async def test_revert_is_classified(self):
        client = make_client()
        client.contract = FakeContract(
            withdraw=FakeCall(ContractLogicError("execution reverted: Auto release time not reached yet"))
        )

        result = await client.dry_run_withdraw("pay-1", SIGNER_ADDRESS)

        assert result.ok is False
        assert result.revert_reason == "Auto release time not reached yet"
        assert result.cause == RevertCause.NOT_DUE


class TestWithdraw:
    async def test_requires_signer(self):
        client = make_client()
        with pytest.raises(ExternalUnavailable):
            await client.withdraw("pay-1", SIGNER_ADDRESS)

    async def test_signer_must_be_caller(self):
        client = make_client(signer_key=SIGNER_KEY)
        with pytest.raises(EscrowReverted) as exc_info:
            await client.withdraw("pay-1", OWNER)
        assert "not owner" in exc_info.value.reason


class TestStatusViewSetting:
    async def test_environment_selects_status_view(self, monkeypatch):
        monkeypatch.setenv("CHAIN_STATUS_FUNCTION", "getPayment")

        config = EngineConfig.from_settings(Settings.from_env())

        assert config.chain.status_function == "getPayment"

    async def test_default_status_view(self, monkeypatch):
        monkeypatch.delenv("CHAIN_STATUS_FUNCTION", raising=False)

        config = EngineConfig.from_settings(Settings.from_env())

        assert config.chain.status_function == "getPaymentStatus"
