"""Token ledger adapters: the chain-facing side of the payment router.

Two implementations of the ``TokenLedger`` protocol:

- ``Web3TokenLedger``: live mode. Talks to an EVM node through AsyncWeb3 and
  signs locally with the treasury key (eth-account).
- ``SimulatedTokenLedger``: dev/test mode. Keeps balances in memory and
  mimics contract reverts with web3's ``ContractLogicError`` so the router
  sees the same error shapes in both modes.

Mutations (``transfer``/``mint``) return as soon as the transaction is
broadcast; ``wait_for_receipt`` is the separate finality step.
"""
from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from eth_account import Account
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from .config import ChainSettings
from .constants import RoutingDefaults
from .exceptions import ConfigurationError, ExecutionTimeoutError
from .logging import get_logger

logger = get_logger(__name__)


# Minimal ABI for the token surface the router uses
TOKEN_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "treasury",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "mint",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


class TransactionFailedError(Exception):
    """A mined transaction reverted (receipt status 0)."""

    def __init__(self, tx_hash: str, block_number: Optional[int] = None) -> None:
        self.tx_hash = tx_hash
        self.block_number = block_number
        super().__init__(f"execution reverted: transaction {tx_hash} failed on-chain")


@dataclass(frozen=True)
class TxReceipt:
    """Final receipt of a mined transaction."""
    tx_hash: str
    block_number: int
    status: int = 1
    gas_used: Optional[int] = None


class TokenLedger(Protocol):
    async def balance_of(self, token_address: str, address: str) -> int: ...
    async def transfer(self, token_address: str, to: str, amount: int) -> str: ...
    async def mint(self, token_address: str, to: str, amount: int) -> str: ...
    async def decimals(self, token_address: str) -> int: ...
    async def treasury(self, token_address: str) -> str: ...
    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> TxReceipt: ...


class Web3TokenLedger:
    """
    Live token ledger over JSON-RPC.

    Features:
    - Local signing with the treasury key
    - Gas estimation with a safety buffer, default limit on estimation failure
    - Nonce allocation serialized per ledger instance
    - Confirmation wait bounded by a timeout
    """

    def __init__(
        self,
        settings: ChainSettings,
        *,
        w3: Optional[AsyncWeb3] = None,
    ) -> None:
        if not settings.rpc_url and w3 is None:
            raise ConfigurationError("Live chain mode requires GBML_CHAIN__RPC_URL")
        if not settings.treasury_private_key:
            raise ConfigurationError("Live chain mode requires GBML_CHAIN__TREASURY_PRIVATE_KEY")

        self._settings = settings
        self._w3 = w3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(settings.rpc_url))
        self._account = Account.from_key(settings.treasury_private_key)
        self._nonce_lock = asyncio.Lock()

    @property
    def signer_address(self) -> str:
        return self._account.address

    def _contract(self, token_address: str):
        return self._w3.eth.contract(
            address=Web3.to_checksum_address(token_address),
            abi=TOKEN_ABI,
        )

    async def balance_of(self, token_address: str, address: str) -> int:
        contract = self._contract(token_address)
        return int(await contract.functions.balanceOf(Web3.to_checksum_address(address)).call())

    async def decimals(self, token_address: str) -> int:
        return int(await self._contract(token_address).functions.decimals().call())

    async def treasury(self, token_address: str) -> str:
        address = await self._contract(token_address).functions.treasury().call()
        return Web3.to_checksum_address(address)

    async def transfer(self, token_address: str, to: str, amount: int) -> str:
        fn = self._contract(token_address).functions.transfer(Web3.to_checksum_address(to), int(amount))
        return await self._send(fn, "transfer")

    async def mint(self, token_address: str, to: str, amount: int) -> str:
        fn = self._contract(token_address).functions.mint(Web3.to_checksum_address(to), int(amount))
        return await self._send(fn, "mint")

    async def _estimate_gas(self, fn: Any) -> int:
        try:
            estimate = await fn.estimate_gas({"from": self._account.address})
            return int(estimate * RoutingDefaults.GAS_BUFFER_MULTIPLIER)
        except ContractLogicError:
            # A revert at estimation time will revert on-chain too
            raise
        except (Web3Exception, ValueError) as e:
            logger.warning("Gas estimation failed, using default", error=str(e))
            return self._settings.gas_limit

    async def _send(self, fn: Any, operation: str) -> str:
        gas = await self._estimate_gas(fn)
        async with self._nonce_lock:
            nonce = await self._w3.eth.get_transaction_count(self._account.address, "pending")
            tx: Dict[str, Any] = await fn.build_transaction({
                "from": self._account.address,
                "nonce": nonce,
                "gas": gas,
                "chainId": self._settings.chain_id,
            })
            signed = self._account.sign_transaction(tx)
            tx_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)

        tx_hash_hex = Web3.to_hex(tx_hash)
        logger.info("Transaction submitted", operation=operation, tx_hash=tx_hash_hex, nonce=nonce)
        return tx_hash_hex

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> TxReceipt:
        try:
            receipt = await self._w3.eth.wait_for_transaction_receipt(
                tx_hash,
                timeout=timeout,
                poll_latency=self._settings.poll_interval_seconds,
            )
        except TimeExhausted as e:
            raise ExecutionTimeoutError(
                f"Transaction {tx_hash} not mined after {timeout}s",
                tx_hash=tx_hash,
                timeout_seconds=timeout,
            ) from e

        block_number = int(receipt["blockNumber"])
        if int(receipt["status"]) == 0:
            raise TransactionFailedError(tx_hash, block_number)

        await self._wait_for_confirmations(tx_hash, block_number)
        return TxReceipt(
            tx_hash=tx_hash,
            block_number=block_number,
            status=1,
            gas_used=receipt.get("gasUsed"),
        )

    async def _wait_for_confirmations(self, tx_hash: str, tx_block: int) -> None:
        required = self._settings.confirmations_required
        while True:
            current_block = await self._w3.eth.block_number
            confirmations = current_block - tx_block + 1
            if confirmations >= required:
                logger.info("Transaction confirmed", tx_hash=tx_hash, confirmations=confirmations)
                return
            logger.debug(
                "Waiting for confirmations",
                tx_hash=tx_hash,
                confirmations=confirmations,
                required=required,
            )
            await asyncio.sleep(self._settings.poll_interval_seconds)


@dataclass
class SimulatedToken:
    address: str
    decimals: int
    treasury: str
    mintable: bool = True


class SimulatedTokenLedger:
    """In-memory ledger for development and tests.

    Tokens must be registered with ``add_token``. Failure injection:
    ``fail_next(operation, error)`` makes the next call of that operation
    raise ``error``; ``hold_receipts`` keeps transactions unmined so the
    finality wait runs into its timeout.
    """

    def __init__(self) -> None:
        self._tokens: Dict[str, SimulatedToken] = {}
        self._balances: Dict[tuple[str, str], int] = {}
        self._receipts: Dict[str, TxReceipt] = {}
        self._failures: Dict[str, list[BaseException]] = {}
        self._block_number = 1
        self.hold_receipts = False
        self.calls: list[tuple[str, ...]] = []

    @staticmethod
    def _key(address: str) -> str:
        return address.lower()

    def add_token(
        self,
        token_address: str,
        *,
        decimals: int = 18,
        treasury: Optional[str] = None,
        treasury_balance: int = 0,
        mintable: bool = True,
    ) -> SimulatedToken:
        token = SimulatedToken(
            address=Web3.to_checksum_address(token_address),
            decimals=decimals,
            treasury=Web3.to_checksum_address(treasury or _random_address()),
            mintable=mintable,
        )
        self._tokens[self._key(token_address)] = token
        self.set_balance(token_address, token.treasury, treasury_balance)
        return token

    def set_balance(self, token_address: str, address: str, amount: int) -> None:
        self._balances[(self._key(token_address), self._key(address))] = int(amount)

    def fail_next(self, operation: str, error: BaseException) -> None:
        self._failures.setdefault(operation, []).append(error)

    def _maybe_fail(self, operation: str) -> None:
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _token(self, token_address: str) -> SimulatedToken:
        token = self._tokens.get(self._key(token_address))
        if token is None:
            raise ContractLogicError(f"execution reverted: no token contract at {token_address}")
        return token

    def _record_tx(self) -> str:
        tx_hash = "0x" + secrets.token_hex(32)
        self._block_number += 1
        self._receipts[tx_hash] = TxReceipt(tx_hash=tx_hash, block_number=self._block_number)
        return tx_hash

    async def balance_of(self, token_address: str, address: str) -> int:
        self.calls.append(("balance_of", token_address, address))
        self._maybe_fail("balance_of")
        self._token(token_address)
        return self._balances.get((self._key(token_address), self._key(address)), 0)

    async def decimals(self, token_address: str) -> int:
        self.calls.append(("decimals", token_address))
        self._maybe_fail("decimals")
        return self._token(token_address).decimals

    async def treasury(self, token_address: str) -> str:
        self.calls.append(("treasury", token_address))
        self._maybe_fail("treasury")
        return self._token(token_address).treasury

    async def transfer(self, token_address: str, to: str, amount: int) -> str:
        self.calls.append(("transfer", token_address, to, str(amount)))
        self._maybe_fail("transfer")
        token = self._token(token_address)
        source = (self._key(token_address), self._key(token.treasury))
        balance = self._balances.get(source, 0)
        if balance < amount:
            raise ContractLogicError("execution reverted: ERC20: transfer amount exceeds balance")
        target = (self._key(token_address), self._key(to))
        self._balances[source] = balance - amount
        self._balances[target] = self._balances.get(target, 0) + amount
        return self._record_tx()

    async def mint(self, token_address: str, to: str, amount: int) -> str:
        self.calls.append(("mint", token_address, to, str(amount)))
        self._maybe_fail("mint")
        token = self._token(token_address)
        if not token.mintable:
            raise ContractLogicError("execution reverted: AccessControl: account is missing role MINTER_ROLE")
        target = (self._key(token_address), self._key(to))
        self._balances[target] = self._balances.get(target, 0) + amount
        return self._record_tx()

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> TxReceipt:
        self.calls.append(("wait_for_receipt", tx_hash))
        self._maybe_fail("wait_for_receipt")
        if self.hold_receipts:
            await asyncio.sleep(timeout)
            raise ExecutionTimeoutError(
                f"Transaction {tx_hash} not mined after {timeout}s",
                tx_hash=tx_hash,
                timeout_seconds=timeout,
            )
        receipt = self._receipts.get(tx_hash)
        if receipt is None:
            raise TransactionFailedError(tx_hash)
        return receipt

    def operations(self) -> list[str]:
        """Names of the calls made so far, in order."""
        return [call[0] for call in self.calls]


def _random_address() -> str:
    return Web3.to_checksum_address("0x" + secrets.token_hex(20))


__all__ = [
    "TOKEN_ABI",
    "TokenLedger",
    "TxReceipt",
    "TransactionFailedError",
    "Web3TokenLedger",
    "SimulatedToken",
    "SimulatedTokenLedger",
]
