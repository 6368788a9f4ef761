from __future__ import annotations

import logging
from typing import Protocol

from web3 import Web3

from relay_monitor.errors import RelayMonitorError
from relay_monitor.models import Identity
from relay_monitor.stats import Notifier

LOGGER = logging.getLogger("relay_monitor")


class BalanceSource(Protocol):
    async def balance(self, address: str) -> int: ...


class DepositSink(Protocol):
    async def deposit_for(self, identity: Identity, amount_wei: int) -> str: ...

    async def wait_for_receipt(self, tx_hash: str, confirmations: int = 1) -> dict: ...


class BalanceKeeper:
    """Keeps each identity's relay balance above a floor by depositing on-chain."""

    def __init__(
        self,
        relay: BalanceSource,
        ledger: DepositSink,
        *,
        min_balance_eth: float,
        topup_eth: float,
        confirmations: int,
        every_rounds: int,
        notifier: Notifier | None = None,
    ) -> None:
        self.relay = relay
        self.ledger = ledger
        self.min_balance_wei = int(Web3.to_wei(min_balance_eth, "ether"))
        self.topup_wei = int(Web3.to_wei(topup_eth, "ether"))
        self.confirmations = max(1, int(confirmations))
        self.every_rounds = int(every_rounds)
        self.notifier = notifier
        self.topups = 0

    def due(self, round_number: int, identity_count: int = 1) -> bool:
        # The first pass and each periodic pass visit every identity once.
        span = max(1, int(identity_count))
        if round_number < span:
            return True
        if self.every_rounds <= 0:
            return False
        return round_number % self.every_rounds < span

    def confirmations_for(self, round_number: int, identity_count: int = 1) -> int:
        # Only the first pass blocks on a confirmed deposit; later top-ups are fire and forget.
        return self.confirmations if round_number < max(1, int(identity_count)) else 0

    async def ensure_funded(self, identity: Identity, confirmations: int | None = None) -> bool:
        if confirmations is None:
            confirmations = self.confirmations
        balance: int | None
        try:
            balance = await self.relay.balance(identity.address)
        except RelayMonitorError as exc:
            LOGGER.warning("relay balance unavailable address=%s: %s", identity.address, exc)
            balance = None

        if balance is not None and balance >= self.min_balance_wei:
            LOGGER.debug("relay balance ok address=%s balance_wei=%d", identity.address, balance)
            return True

        LOGGER.info(
            "topping up relay balance address=%s balance_wei=%s amount_wei=%d",
            identity.address,
            balance if balance is not None else "unknown",
            self.topup_wei,
        )
        receipt: dict = {}
        try:
            tx_hash = await self.ledger.deposit_for(identity, self.topup_wei)
            if confirmations > 0:
                receipt = await self.ledger.wait_for_receipt(tx_hash, confirmations)
        except RelayMonitorError as exc:
            LOGGER.error("relay balance top-up failed address=%s: %s", identity.address, exc)
            if self.notifier is not None:
                await self.notifier.notify(
                    "Relay balance top-up failed",
                    f"Top-up of {self.topup_wei} wei for {identity.address} failed: {exc}",
                )
            return False

        self.topups += 1
        LOGGER.info(
            "relay balance topped up address=%s tx=%s block=%s",
            identity.address,
            tx_hash,
            receipt.get("blockNumber", "pending"),
        )
        return True
