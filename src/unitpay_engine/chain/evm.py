"""Escrow client for EVM deployments, over JSON-RPC with web3.py.

Deployed contract versions disagree on the name of their status view.
The client calls only the view named by ``ChainConfig.status_function``.
A "not found" revert reads as an empty record. Any other revert, or a
view that returns no data, raises Unreconcilable so a misconfigured
deployment is visible instead of looking like a missing payment.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, TypeVar

from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError, Web3Exception

from unitpay_engine.chain.base import (
    DryRunResult,
    EscrowRecord,
    RevertCause,
    WithdrawResult,
    classify_revert,
    decode_status_response,
)
from unitpay_engine.engine_config import ESCROW_STATUS_FUNCTIONS, ChainConfig
from unitpay_engine.exceptions import EscrowReverted, ExternalUnavailable, Unreconcilable

logger = logging.getLogger(__name__)

T = TypeVar("T")

_STATUS_OUTPUTS = [
    {"name": "status", "type": "uint8"},
    {"name": "isDisputed", "type": "bool"},
    {"name": "owner", "type": "address"},
    {"name": "recipient", "type": "address"},
    {"name": "amount", "type": "uint256"},
    {"name": "timestamp", "type": "uint256"},
    {"name": "lockTime", "type": "uint256"},
    {"name": "releaseTime", "type": "uint256"},
]

ESCROW_ABI: list[dict[str, Any]] = [
    *(
        {
            "type": "function",
            "name": name,
            "stateMutability": "view",
            "inputs": [{"name": "paymentId", "type": "string"}],
            "outputs": _STATUS_OUTPUTS,
        }
        for name in ESCROW_STATUS_FUNCTIONS
    ),
    {
        "type": "function",
        "name": "withdrawPayment",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "paymentId", "type": "string"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
]

_REVERT_PREFIX = "execution reverted:"


def revert_message(error: ContractLogicError) -> str:
    """Decoded revert string without the node's prefix."""
    message = str(error.message if getattr(error, "message", None) else error).strip()
    if message.lower().startswith(_REVERT_PREFIX):
        message = message[len(_REVERT_PREFIX):].strip()
    return message


class EvmEscrowClient:
    """Escrow contract client.

    Reads are view calls. ``withdraw`` signs with ``config.signer_key`` and
    waits for the receipt; a reverted receipt raises EscrowReverted.
    """

    name = "evm"

    def __init__(self, config: ChainConfig, *, web3: AsyncWeb3 | None = None):
        self.config = config
        self.w3 = web3 or AsyncWeb3(AsyncHTTPProvider(config.rpc_url))
        self.contract = self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(config.contract_address),
            abi=ESCROW_ABI,
        )
        self._account = self.w3.eth.account.from_key(config.signer_key) if config.signer_key else None

    async def _bounded(self, operation: str, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.config.timeout_seconds)
        except (ContractLogicError, BadFunctionCallOutput):
            raise
        except asyncio.TimeoutError as e:
            raise ExternalUnavailable(self.name, operation, "timed out") from e
        except (Web3Exception, OSError) as e:
            raise ExternalUnavailable(self.name, operation, str(e)) from e

    async def get_payment_status(self, payment_id: str) -> EscrowRecord:
        view = self.config.status_function
        function = self.contract.get_function_by_name(view)(payment_id)
        try:
            raw = await self._bounded("get_payment_status", function.call())
        except ContractLogicError as e:
            reason = revert_message(e)
            if classify_revert(reason) == RevertCause.NOT_FOUND:
                return decode_status_response(payment_id, None)
            logger.error("Escrow status view %s reverted for %s: %r", view, payment_id, reason)
            raise Unreconcilable(f"Escrow status view {view} reverted for '{payment_id}': {reason}") from e
        except BadFunctionCallOutput as e:
            logger.error("Escrow status view %s returned no data for %s", view, payment_id)
            raise Unreconcilable(
                f"Escrow status view {view} returned no data; check CHAIN_STATUS_FUNCTION and the contract address"
            ) from e
        return decode_status_response(
            payment_id,
            dict(zip((o["name"] for o in _STATUS_OUTPUTS), raw)),
            decimals=self.config.token_decimals,
        )

    async def dry_run_withdraw(self, payment_id: str, caller: str) -> DryRunResult:
        call = self.contract.functions.withdrawPayment(payment_id).call(
            {"from": AsyncWeb3.to_checksum_address(caller)}
        )
        try:
            await self._bounded("dry_run_withdraw", call)
        except ContractLogicError as e:
            return DryRunResult(ok=False, revert_reason=revert_message(e))
        return DryRunResult(ok=True)

    async def withdraw(self, payment_id: str, caller: str) -> WithdrawResult:
        if self._account is None:
            raise ExternalUnavailable(self.name, "withdraw", "no signer key configured")
        if self._account.address.lower() != caller.lower():
            raise EscrowReverted(payment_id, "not owner: signer does not match caller")

        sender = self._account.address
        try:
            nonce = await self._bounded("withdraw", self.w3.eth.get_transaction_count(sender))
            tx = await self._bounded(
                "withdraw",
                self.contract.functions.withdrawPayment(payment_id).build_transaction(
                    {"from": sender, "nonce": nonce}
                ),
            )
        except ContractLogicError as e:
            # Gas estimation runs the call and surfaces the revert
            raise EscrowReverted(payment_id, revert_message(e)) from e

        signed = self._account.sign_transaction(tx)
        tx_hash = await self._bounded("withdraw", self.w3.eth.send_raw_transaction(signed.raw_transaction))
        receipt = await self._bounded(
            "withdraw",
            self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.config.timeout_seconds),
        )
        hex_hash = AsyncWeb3.to_hex(tx_hash)
        if receipt["status"] != 1:
            raise EscrowReverted(payment_id, f"transaction {hex_hash} reverted")
        logger.info("Escrow withdraw %s submitted for %s", hex_hash, payment_id)
        return WithdrawResult(payment_id=payment_id, tx_hash=hex_hash)

