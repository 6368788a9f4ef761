from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable

from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from relay_monitor.errors import TransientLedgerError
from relay_monitor.models import Identity, LogEntry, LogFilter, parse_int, to_hex

LOGGER = logging.getLogger("relay_monitor")

RELAY_EXECUTED_EVENT = "RelayExecuted(bytes32,bool,address,address,uint256,uint256)"
RELAY_EXECUTED_TOPIC = Web3.to_hex(Web3.keccak(text=RELAY_EXECUTED_EVENT))

RELAY_DEPOSIT_ABI: list[dict[str, Any]] = [
    {
        "inputs": [{"internalType": "address", "name": "recipient", "type": "address"}],
        "name": "depositFor",
        "outputs": [],
        "stateMutability": "payable",
        "type": "function",
    }
]


def _field(obj: Any, key: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def receipt_status(receipt: Any) -> int:
    if receipt is None:
        return 0
    raw = _field(receipt, "status")
    if raw is None:
        return 0
    return parse_int(raw)


def receipt_summary(receipt: Any) -> dict[str, Any]:
    if receipt is None:
        return {}
    out: dict[str, Any] = {"status": receipt_status(receipt)}
    for key in ("transactionHash", "blockHash"):
        value = _field(receipt, key)
        if value is not None:
            out[key] = to_hex(value)
    for key in ("blockNumber", "gasUsed", "effectiveGasPrice"):
        value = _field(receipt, key)
        if value is not None:
            out[key] = parse_int(value)
    return out


def log_entry_from_raw(raw: Any) -> LogEntry:
    topics = _field(raw, "topics") or []
    item_id = to_hex(topics[1]).lower() if len(topics) > 1 else ""
    tx_hash = _field(raw, "transactionHash")
    return LogEntry(
        id=item_id,
        height=parse_int(_field(raw, "blockNumber")),
        tx_hash=to_hex(tx_hash) if tx_hash is not None else "",
    )


class LedgerClient:
    def __init__(
        self,
        rpc_url: str,
        *,
        relay_contract_address: str,
        chain_id: int,
        timeout_seconds: float = 10.0,
        w3: Any | None = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.relay_contract_address = relay_contract_address
        self.chain_id = int(chain_id)
        self.timeout_seconds = max(1.0, float(timeout_seconds))
        self._w3 = w3

    def _web3(self) -> Any:
        if self._w3 is not None:
            return self._w3
        self._w3 = AsyncWeb3(AsyncHTTPProvider(self.rpc_url))
        return self._w3

    async def close(self) -> None:
        if self._w3 is None:
            return
        try:
            await self._w3.provider.disconnect()
        except Exception as exc:
            LOGGER.warning("ledger provider close failed error=%s", exc)

    async def _rpc(self, awaitable: Awaitable[Any], what: str, timeout: float | None = None) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout or self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise TransientLedgerError(f"{what} timed out") from exc
        except Exception as exc:
            raise TransientLedgerError(f"{what} failed: {exc.__class__.__name__}") from exc

    async def current_height(self) -> int:
        w3 = self._web3()
        return parse_int(await self._rpc(w3.eth.block_number, "eth_blockNumber"))

    async def query_logs(self, log_filter: LogFilter) -> list[LogEntry]:
        w3 = self._web3()
        params = {
            "address": Web3.to_checksum_address(log_filter.address),
            "topics": list(log_filter.topics),
            "fromBlock": int(log_filter.from_block),
            "toBlock": int(log_filter.to_block),
        }
        raw_logs = await self._rpc(w3.eth.get_logs(params), "eth_getLogs")
        return [log_entry_from_raw(raw) for raw in raw_logs or []]

    async def deposit_for(self, identity: Identity, amount_wei: int) -> str:
        """Send ``depositFor(identity)`` to the relay contract, signed with the identity's key."""
        w3 = self._web3()
        signer = Web3.to_checksum_address(identity.address)
        contract = w3.eth.contract(
            address=Web3.to_checksum_address(self.relay_contract_address),
            abi=RELAY_DEPOSIT_ABI,
        )
        nonce = parse_int(await self._rpc(w3.eth.get_transaction_count(signer, "pending"), "eth_getTransactionCount"))
        gas_price = max(1, parse_int(await self._rpc(w3.eth.gas_price, "eth_gasPrice")))
        tx = await self._rpc(
            contract.functions.depositFor(signer).build_transaction(
                {
                    "from": signer,
                    "value": int(amount_wei),
                    "nonce": nonce,
                    "chainId": self.chain_id,
                    "gasPrice": gas_price,
                }
            ),
            "build depositFor",
        )
        gas_limit = parse_int(tx.get("gas", 0))
        if gas_limit <= 0:
            gas_limit = parse_int(await self._rpc(w3.eth.estimate_gas(tx), "eth_estimateGas"))
        tx["gas"] = max(21_000, int(gas_limit * 1.20))

        signed = Account.sign_transaction(tx, identity.private_key)
        tx_hash = await self._rpc(w3.eth.send_raw_transaction(signed.raw_transaction), "eth_sendRawTransaction")
        return to_hex(tx_hash)

    async def wait_for_receipt(
        self,
        tx_hash: str,
        confirmations: int = 1,
        timeout_seconds: float = 600.0,
        poll_interval_seconds: float = 5.0,
    ) -> dict[str, Any]:
        w3 = self._web3()
        receipt = await self._rpc(
            w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout_seconds, poll_latency=poll_interval_seconds),
            "wait for receipt",
            timeout=timeout_seconds + self.timeout_seconds,
        )
        summary = receipt_summary(receipt)
        if summary.get("status") != 1:
            raise TransientLedgerError(f"transaction {tx_hash} reverted")
        target = parse_int(summary.get("blockNumber")) + max(0, int(confirmations) - 1)
        while confirmations > 1 and await self.current_height() < target:
            await asyncio.sleep(poll_interval_seconds)
        return summary
