from __future__ import annotations

import asyncio
from dataclasses import replace
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from relay_monitor.config import load_config  # noqa: E402
from relay_monitor.errors import SigningError, TransientLedgerError  # noqa: E402
from relay_monitor.models import (  # noqa: E402
    Identity,
    LogEntry,
    LogFilter,
    RelayReceipt,
    RelayTransaction,
    SubmissionDescriptor,
)

# Well-known development keys (hardhat/anvil accounts #0 and #1).
TEST_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
TEST_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
TEST_PRIVATE_KEY_2 = "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"
TEST_ADDRESS_2 = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"


def test_config(**kwargs):
    cfg = load_config()
    return replace(cfg, **kwargs)


def fast_config(**kwargs):
    defaults = dict(
        pacing_interval_seconds=0.001,
        block_poll_interval_seconds=0.001,
        print_interval_seconds=60.0,
        budget_capacity=1_400_000,
        cost_per_item=140_000,
        confirmation_deadline_blocks=40,
        max_rounds=None,
        halt_on_deadline_exceeded=False,
        notify_on_errors=False,
    )
    defaults.update(kwargs)
    return test_config(**defaults)


def make_identities(count: int) -> list[Identity]:
    return [Identity(address=f"0x{index + 1:040x}", private_key="unused") for index in range(count)]


def item_id(n: int) -> str:
    return f"0x{n:064x}"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeLedger:
    """In-memory chain: a height (or a script of heights) plus relay logs."""

    def __init__(
        self,
        height: int = 100,
        heights: list[int] | None = None,
        logs: list[LogEntry] | None = None,
        auto_confirm: bool = False,
        height_failures: int = 0,
        query_failures: int = 0,
        delay_seconds: float = 0.0,
        query_delay_seconds: float = 0.0,
    ) -> None:
        self.height = height
        self.heights = list(heights or [])
        self.logs = list(logs or [])
        self.auto_confirm = auto_confirm
        self.height_failures = height_failures
        self.query_failures = query_failures
        self.delay_seconds = delay_seconds
        self.query_delay_seconds = query_delay_seconds
        self.height_calls = 0
        self.query_calls = 0
        self.filters: list[LogFilter] = []
        self.deposits: list[tuple[str, int]] = []
        self.deposit_error: Exception | None = None
        self.receipt_waits: list[int] = []

    async def current_height(self) -> int:
        self.height_calls += 1
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.height_failures > 0:
            self.height_failures -= 1
            raise TransientLedgerError("eth_blockNumber failed: ConnectionError")
        if self.heights:
            self.height = self.heights.pop(0) if len(self.heights) > 1 else self.heights[0]
        return self.height

    async def query_logs(self, log_filter: LogFilter) -> list[LogEntry]:
        self.query_calls += 1
        self.filters.append(log_filter)
        if self.query_delay_seconds:
            await asyncio.sleep(self.query_delay_seconds)
        if self.query_failures > 0:
            self.query_failures -= 1
            raise TransientLedgerError("eth_getLogs failed: ConnectionError")
        wanted = str(log_filter.topics[1]).lower()
        if self.auto_confirm:
            return [LogEntry(id=wanted, height=log_filter.from_block + 12)]
        return [entry for entry in self.logs if entry.id.lower() == wanted]

    async def deposit_for(self, identity: Identity, amount_wei: int) -> str:
        if self.deposit_error is not None:
            raise self.deposit_error
        self.deposits.append((identity.address, amount_wei))
        return "0x" + "ab" * 32

    async def wait_for_receipt(self, tx_hash: str, confirmations: int = 1) -> dict:
        self.receipt_waits.append(confirmations)
        return {"status": 1, "transactionHash": tx_hash, "blockNumber": self.height}


class FakeSigner:
    def __init__(self, fail_rounds: set[int] | None = None) -> None:
        self.fail_rounds = set(fail_rounds or ())
        self.descriptors: list[SubmissionDescriptor] = []

    async def sign_submission(self, descriptor: SubmissionDescriptor) -> RelayTransaction:
        index = len(self.descriptors)
        self.descriptors.append(descriptor)
        if index in self.fail_rounds:
            raise SigningError(f"signing failed for {descriptor.identity.address}: ValueError")
        return RelayTransaction(
            relay_tx_id=item_id(index + 1),
            from_address=descriptor.identity.address,
            to=descriptor.to,
            gas=descriptor.gas,
            data=descriptor.data,
            deadline_block_number=descriptor.deadline_block_number,
            compensation=descriptor.compensation,
            relay_contract_address=descriptor.relay_contract_address,
            signature="0x" + "00" * 65,
        )


class FakeRelay:
    """Each submit pops the next scripted error; ``None`` (or an empty script) accepts."""

    def __init__(self, errors: list[Exception | None] | None = None, balance_wei: int = 10**19) -> None:
        self.errors = list(errors or [])
        self.balance_wei = balance_wei
        self.balance_error: Exception | None = None
        self.submitted: list[RelayTransaction] = []
        self.accepted_at = 1_700_000_000.25

    async def submit(self, tx: RelayTransaction) -> RelayReceipt:
        error = self.errors.pop(0) if self.errors else None
        if error is not None:
            raise error
        self.submitted.append(tx)
        return RelayReceipt(id=tx.relay_tx_id, accepted_at=self.accepted_at)

    async def balance(self, address: str) -> int:
        if self.balance_error is not None:
            raise self.balance_error
        return self.balance_wei


class RecordingNotifier:
    def __init__(self) -> None:
        self.messages: list[tuple[str, str]] = []

    @property
    def subjects(self) -> list[str]:
        return [subject for subject, _ in self.messages]

    async def notify(self, subject: str, body: str) -> None:
        self.messages.append((subject, body))
