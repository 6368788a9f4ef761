from __future__ import annotations

from dataclasses import dataclass
import os


DEFAULT_RELAY_API_URL = "https://api.pisa.watch/any.sender.ropsten"
DEFAULT_RELAY_CONTRACT = "0x4D0969B57052B5F94ED8f8ff2ceD27264E0F268C"
DEFAULT_RECEIPT_SIGNER = "0xe41743Ca34762b84004D3ABe932443FC51D561D5"
DEFAULT_TARGET_CONTRACT = "0xc53af3030879ff5750ba56c17e656043c3a26987"

_TRUTHY = {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class RelayConfig:
    relay_api_url: str
    relay_contract_address: str
    receipt_signer_address: str
    rpc_url: str
    chain_id: int
    api_timeout_seconds: float

    private_keys: tuple[str, ...]
    target_contract_address: str
    target_function: str
    compensation_wei: int
    relay_deadline_blocks: int

    pacing_interval_seconds: float
    block_poll_interval_seconds: float
    budget_capacity: int
    cost_per_item: int
    confirmation_deadline_blocks: int
    log_lookback_blocks: int
    max_consecutive_fatal_errors: int
    halt_on_deadline_exceeded: bool
    max_rounds: int | None

    balance_check_every_rounds: int
    min_relay_balance_eth: float
    topup_amount_eth: float
    topup_confirmations: int

    window_size_seconds: float
    print_interval_seconds: float

    smtp_host: str
    smtp_port: int
    smtp_username: str
    smtp_password: str
    mail_from: str
    mail_to: tuple[str, ...]
    notify_on_errors: bool

    log_level: str

    @property
    def identity_count(self) -> int:
        return len(self.private_keys)

    @property
    def mail_enabled(self) -> bool:
        return bool(self.smtp_host and self.mail_to)


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in _TRUTHY


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def load_config() -> RelayConfig:
    private_keys = _env_list("RELAY_PRIVATE_KEYS")
    if not private_keys:
        single = os.getenv("PRIVATE_KEY", "").strip()
        private_keys = (single,) if single else ()

    raw_max_rounds = _env_int("MAX_ROUNDS", 0)

    return RelayConfig(
        relay_api_url=os.getenv("RELAY_API_URL", DEFAULT_RELAY_API_URL).rstrip("/"),
        relay_contract_address=os.getenv("RELAY_CONTRACT_ADDRESS", DEFAULT_RELAY_CONTRACT),
        receipt_signer_address=os.getenv("RECEIPT_SIGNER_ADDRESS", DEFAULT_RECEIPT_SIGNER),
        rpc_url=os.getenv("RPC_URL", "http://127.0.0.1:8545"),
        chain_id=_env_int("CHAIN_ID", 3),
        api_timeout_seconds=10.0,
        private_keys=private_keys,
        target_contract_address=os.getenv("TARGET_CONTRACT_ADDRESS", DEFAULT_TARGET_CONTRACT),
        target_function=os.getenv("TARGET_FUNCTION", "tryme()"),
        compensation_wei=1_000_000_000,
        # The relay requires at least 400 blocks; the extra gives some headroom.
        relay_deadline_blocks=410,
        pacing_interval_seconds=_env_float("PACING_INTERVAL_SECONDS", 0.5),
        block_poll_interval_seconds=_env_float("BLOCK_POLL_INTERVAL_SECONDS", 15.0),
        budget_capacity=_env_int("BUDGET_CAPACITY", 1_400_000),
        cost_per_item=_env_int("COST_PER_ITEM", 140_000),
        confirmation_deadline_blocks=_env_int("CONFIRMATION_DEADLINE_BLOCKS", 40),
        log_lookback_blocks=10,
        max_consecutive_fatal_errors=3,
        halt_on_deadline_exceeded=_env_bool("HALT_ON_DEADLINE_EXCEEDED"),
        max_rounds=raw_max_rounds if raw_max_rounds > 0 else None,
        balance_check_every_rounds=100,
        min_relay_balance_eth=_env_float("MIN_RELAY_BALANCE_ETH", 1.0),
        topup_amount_eth=_env_float("TOPUP_AMOUNT_ETH", 10.0),
        topup_confirmations=15,
        # 5 min window, print every 20 secs
        window_size_seconds=300.0,
        print_interval_seconds=20.0,
        smtp_host=os.getenv("SMTP_HOST", ""),
        smtp_port=_env_int("SMTP_PORT", 587),
        smtp_username=os.getenv("SMTP_USERNAME", ""),
        smtp_password=os.getenv("SMTP_PASSWORD", ""),
        mail_from=os.getenv("MAIL_FROM", "relay-monitor@localhost"),
        mail_to=_env_list("MAIL_TO"),
        notify_on_errors=_env_bool("NOTIFY_ON_ERRORS"),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )


def validate_config(config: RelayConfig) -> list[str]:
    problems: list[str] = []
    if not config.private_keys:
        problems.append("no signing identities configured (set RELAY_PRIVATE_KEYS or PRIVATE_KEY)")
    if config.cost_per_item <= 0:
        problems.append("cost_per_item must be > 0")
    if config.budget_capacity <= 0:
        problems.append("budget_capacity must be > 0")
    elif config.cost_per_item > config.budget_capacity:
        problems.append(
            f"cost_per_item={config.cost_per_item} exceeds budget_capacity={config.budget_capacity}; "
            "no submission could ever be admitted"
        )
    if config.pacing_interval_seconds <= 0:
        problems.append("pacing_interval_seconds must be > 0")
    if config.block_poll_interval_seconds <= 0:
        problems.append("block_poll_interval_seconds must be > 0")
    if config.window_size_seconds <= 0:
        problems.append("window_size_seconds must be > 0")
    if config.print_interval_seconds <= 0:
        problems.append("print_interval_seconds must be > 0")
    if config.confirmation_deadline_blocks <= 0:
        problems.append("confirmation_deadline_blocks must be > 0")
    if config.max_consecutive_fatal_errors < 1:
        problems.append("max_consecutive_fatal_errors must be >= 1")
    return problems
