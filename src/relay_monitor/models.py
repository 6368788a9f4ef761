from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, TypeAlias


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def format_ts(ts: float | None) -> str:
    if ts is None:
        return "n/a"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%a, %d %b %Y %H:%M:%S GMT")


def parse_int(raw: Any, default: int = 0) -> int:
    if raw is None:
        return default
    if isinstance(raw, bool):
        return int(raw)
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str):
        text = raw.strip()
        if text == "":
            return default
        try:
            return int(text, 16) if text.lower().startswith("0x") else int(text)
        except ValueError:
            return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def to_hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if hasattr(value, "hex"):
        text = str(value.hex())
        return text if text.startswith("0x") else "0x" + text
    return str(value)


@dataclass(frozen=True)
class Identity:
    address: str
    private_key: str = field(repr=False)


@dataclass(frozen=True)
class SubmissionDescriptor:
    identity: Identity
    to: str
    data: str
    gas: int
    deadline_block_number: int
    compensation: int
    relay_contract_address: str


@dataclass(frozen=True)
class RelayTransaction:
    relay_tx_id: str
    from_address: str
    to: str
    gas: int
    data: str
    deadline_block_number: int
    compensation: int
    relay_contract_address: str
    signature: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "from": self.from_address,
            "to": self.to,
            "gas": self.gas,
            "data": self.data,
            "deadlineBlockNumber": self.deadline_block_number,
            "compensation": str(self.compensation),
            "relayContractAddress": self.relay_contract_address,
            "signature": self.signature,
        }


@dataclass(frozen=True)
class RelayReceipt:
    id: str
    accepted_at: float
    receipt_signature: str = ""
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LogFilter:
    address: str
    topics: list[str | None]
    from_block: int
    to_block: int


@dataclass(frozen=True)
class LogEntry:
    id: str
    height: int
    tx_hash: str = ""


@dataclass
class PendingItem:
    id: str
    declared_cost: int
    submitted_at: float
    submitted_at_height: int
    accepted_at: float
    identity_address: str = ""


@dataclass(frozen=True)
class Success:
    item_id: str
    submit_at: float
    sent_at: float
    confirmed_at: float
    start_height: int
    confirmed_height: int
    recorded_at: float = 0.0

    @property
    def is_error(self) -> bool:
        return False

    @property
    def send_time_ms(self) -> float:
        return (self.sent_at - self.submit_at) * 1000.0

    @property
    def mine_time_s(self) -> float:
        return self.confirmed_at - self.sent_at

    @property
    def block_span(self) -> int:
        return self.confirmed_height - self.start_height


@dataclass(frozen=True)
class Failure:
    error: str
    recorded_at: float = 0.0
    item_id: str = ""
    deadline_exceeded: bool = False

    @property
    def is_error(self) -> bool:
        return True


OutcomeRecord: TypeAlias = Success | Failure
