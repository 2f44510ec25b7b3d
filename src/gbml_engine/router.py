"""
Payment router: decides how a payment is funded and carries it out.

Algorithm for ``route(token, to, amount, decimals)``:
    1. Resolve decimals. A missing value or the sentinel 18 is replaced by
       the token's own ``decimals()``; if that query fails the caller value
       (or 18) is used.
    2. Normalize the amount to smallest units (see ``amounts``).
    3. Read the treasury address and its token balance.
    4. Balance covers the amount: transfer treasury -> recipient.
    5. Otherwise mint to the recipient; if the mint fails, fall back to a
       transfer, which reverts on-chain when funds are short.
    6. Wait for finality, bounded by ``timeout``.

Every failure of steps 1-6 surfaces as RoutingError with the original error
on ``cause``, except the finality timeout, which raises
ExecutionTimeoutError because the transaction may still land.

The balance check and the mutation are not atomic on-chain. Within one
process, routing for the same token is serialized through a per-token lock.
Waiting for that lock is bounded by ``timeout`` as well; a route that cannot
get the lock in time fails with RoutingError before touching the chain. Locks
are dropped once no route holds or waits on them.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .amounts import AmountLike, AmountUnit, to_smallest_unit
from .constants import RoutingDefaults
from .exceptions import (
    ExecutionTimeoutError,
    GbmlException,
    RoutingError,
    exception_from_chain_error,
)
from .logging import get_logger
from .token_ledger import TokenLedger
from .validators import validate_amount_string, validate_decimals, validate_eth_address

logger = get_logger(__name__)


class FundingStrategy(str, Enum):
    TRANSFER = "TRANSFER"
    MINT = "MINT"


@dataclass(frozen=True)
class PaymentReceipt:
    """Outcome of a routed payment."""
    tx_hash: str
    from_address: str
    to_address: str
    amount: int
    block_number: int
    token_address: str
    strategy: FundingStrategy


class PaymentRouter:
    """Routes token payments from the treasury to recipients.

    Args:
        ledger: Token ledger adapter
        confirmation_timeout: Default finality wait in seconds
        serialize_per_token: Run routing for the same token one at a time
    """

    def __init__(
        self,
        ledger: TokenLedger,
        *,
        confirmation_timeout: float = RoutingDefaults.CONFIRMATION_TIMEOUT_SECONDS,
        serialize_per_token: bool = True,
    ) -> None:
        self._ledger = ledger
        self._confirmation_timeout = confirmation_timeout
        self._serialize = serialize_per_token
        # token -> (lock, routes holding or waiting on it)
        self._token_locks: dict[str, tuple[asyncio.Lock, int]] = {}

    @property
    def ledger(self) -> TokenLedger:
        return self._ledger

    @property
    def active_token_locks(self) -> int:
        return len(self._token_locks)

    async def resolve_decimals(self, token_address: str, decimals: Optional[int] = None) -> int:
        """Effective decimals for ``token_address``.

        A caller value other than the sentinel is trusted as-is.
        """
        if decimals is not None and decimals != RoutingDefaults.DECIMALS_SENTINEL:
            return validate_decimals(decimals)

        try:
            return validate_decimals(await self._ledger.decimals(token_address))
        except Exception as e:
            fallback = decimals if decimals is not None else RoutingDefaults.DECIMALS_SENTINEL
            logger.warning(
                "Token decimals query failed, using fallback",
                token_address=token_address,
                fallback=fallback,
                error=str(e),
            )
            return fallback

    async def route(
        self,
        token_address: str,
        to: str,
        amount: AmountLike,
        decimals: Optional[int] = None,
        *,
        timeout: Optional[float] = None,
        unit: AmountUnit = AmountUnit.AUTO,
    ) -> PaymentReceipt:
        """Move ``amount`` of ``token_address`` to ``to``.

        Raises:
            ValidationError: Bad address, amount or decimals (no side effects).
            RoutingError: Any chain step failed, or the token lock was not
                acquired within ``timeout``.
            ExecutionTimeoutError: Finality not reached within ``timeout``.
        """
        token_address = validate_eth_address(token_address, "token_address")
        to = validate_eth_address(to, "to")
        amount = validate_amount_string(amount)
        if decimals is not None:
            decimals = validate_decimals(decimals)
        timeout = self._confirmation_timeout if timeout is None else timeout

        if not self._serialize:
            return await self._route(token_address, to, amount, decimals, timeout, unit)

        key = token_address.lower()
        lock, users = self._token_locks.get(key) or (asyncio.Lock(), 0)
        self._token_locks[key] = (lock, users + 1)
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            except asyncio.TimeoutError as e:
                logger.warning(
                    "Timed out waiting for token routing lock",
                    token_address=token_address,
                    timeout_seconds=timeout,
                )
                raise RoutingError(
                    f"Another payment for {token_address} is still routing after {timeout}s",
                    cause=e,
                    token_address=token_address,
                    step="lock",
                ) from e
            try:
                return await self._route(token_address, to, amount, decimals, timeout, unit)
            finally:
                lock.release()
        finally:
            lock, users = self._token_locks[key]
            if users <= 1:
                del self._token_locks[key]
            else:
                self._token_locks[key] = (lock, users - 1)

    async def _route(
        self,
        token_address: str,
        to: str,
        amount: AmountLike,
        decimals: Optional[int],
        timeout: float,
        unit: AmountUnit,
    ) -> PaymentReceipt:
        effective_decimals = await self.resolve_decimals(token_address, decimals)
        value = to_smallest_unit(amount, effective_decimals, unit)

        try:
            treasury = await self._ledger.treasury(token_address)
        except Exception as e:
            raise exception_from_chain_error(e, token_address=token_address, step="treasury") from e

        try:
            balance = await self._ledger.balance_of(token_address, treasury)
        except Exception as e:
            raise exception_from_chain_error(e, token_address=token_address, step="balance") from e

        logger.info(
            "Routing payment",
            token_address=token_address,
            to=to,
            amount=str(value),
            decimals=effective_decimals,
            treasury=treasury,
            treasury_balance=str(balance),
        )

        if balance >= value:
            strategy = FundingStrategy.TRANSFER
            tx_hash = await self._transfer(token_address, to, value)
        else:
            strategy, tx_hash = await self._mint_or_transfer(token_address, to, value, balance)

        receipt = await self._wait_for_finality(token_address, tx_hash, timeout)

        logger.info(
            "Payment routed",
            token_address=token_address,
            to=to,
            amount=str(value),
            strategy=strategy.value,
            tx_hash=tx_hash,
            block_number=receipt.block_number,
        )
        return PaymentReceipt(
            tx_hash=tx_hash,
            from_address=treasury,
            to_address=to,
            amount=value,
            block_number=receipt.block_number,
            token_address=token_address,
            strategy=strategy,
        )

    async def _transfer(self, token_address: str, to: str, value: int) -> str:
        try:
            return await self._ledger.transfer(token_address, to, value)
        except Exception as e:
            raise exception_from_chain_error(e, token_address=token_address, step="transfer") from e

    async def _mint_or_transfer(
        self,
        token_address: str,
        to: str,
        value: int,
        balance: int,
    ) -> tuple[FundingStrategy, str]:
        logger.info(
            "Treasury balance short, minting",
            token_address=token_address,
            amount=str(value),
            treasury_balance=str(balance),
        )
        try:
            return FundingStrategy.MINT, await self._ledger.mint(token_address, to, value)
        except Exception as e:
            logger.warning(
                "Mint failed, falling back to transfer",
                token_address=token_address,
                error=str(e),
            )
        return FundingStrategy.TRANSFER, await self._transfer(token_address, to, value)

    async def _wait_for_finality(self, token_address: str, tx_hash: str, timeout: float):
        try:
            return await asyncio.wait_for(
                self._ledger.wait_for_receipt(tx_hash, timeout),
                timeout=timeout,
            )
        except ExecutionTimeoutError:
            raise
        except asyncio.TimeoutError as e:
            raise ExecutionTimeoutError(
                f"Transaction {tx_hash} not final after {timeout}s",
                tx_hash=tx_hash,
                timeout_seconds=timeout,
            ) from e
        except GbmlException:
            raise
        except Exception as e:
            raise exception_from_chain_error(
                e, token_address=token_address, step="confirm", tx_hash=tx_hash,
            ) from e


__all__ = ["FundingStrategy", "PaymentReceipt", "PaymentRouter"]
