from __future__ import annotations

from typing import Any, Iterable

from eth_abi import encode
from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from relay_monitor.errors import SigningError
from relay_monitor.models import Identity, RelayTransaction, SubmissionDescriptor

# to, from, data, deadlineBlockNumber, compensation, gas, relayContractAddress
RELAY_TX_ID_TYPES = ["address", "address", "bytes", "uint256", "uint256", "uint256", "address"]


def _to_bytes(data: Any) -> bytes:
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    if data is None:
        return b""
    raw = str(data)
    if raw.startswith("0x"):
        raw = raw[2:]
    return bytes.fromhex(raw)


def function_selector(signature: str) -> str:
    return Web3.to_hex(Web3.keccak(text=signature)[:4])


def relay_tx_id(
    *,
    to: str,
    from_address: str,
    data: str,
    deadline_block_number: int,
    compensation: int,
    gas: int,
    relay_contract_address: str,
) -> str:
    encoded = encode(
        RELAY_TX_ID_TYPES,
        [
            Web3.to_checksum_address(to),
            Web3.to_checksum_address(from_address),
            _to_bytes(data),
            int(deadline_block_number),
            int(compensation),
            int(gas),
            Web3.to_checksum_address(relay_contract_address),
        ],
    )
    return Web3.to_hex(Web3.keccak(encoded))


def load_identities(private_keys: Iterable[str]) -> list[Identity]:
    identities: list[Identity] = []
    for index, key in enumerate(private_keys):
        try:
            address = Account.from_key(key).address
        except Exception as exc:
            # never echo the key itself
            raise ValueError(f"private key #{index} is not a valid secp256k1 key") from exc
        identities.append(Identity(address=address, private_key=key))
    return identities


def recover_signer(tx: RelayTransaction) -> str:
    message = encode_defunct(primitive=_to_bytes(tx.relay_tx_id))
    return Account.recover_message(message, signature=_to_bytes(tx.signature))


class RelaySigner:
    """Builds the relay transaction id and signs it with the identity's key (EIP-191)."""

    async def sign_submission(self, descriptor: SubmissionDescriptor) -> RelayTransaction:
        return self.sign(descriptor)

    def sign(self, descriptor: SubmissionDescriptor) -> RelayTransaction:
        identity = descriptor.identity
        try:
            tx_id = relay_tx_id(
                to=descriptor.to,
                from_address=identity.address,
                data=descriptor.data,
                deadline_block_number=descriptor.deadline_block_number,
                compensation=descriptor.compensation,
                gas=descriptor.gas,
                relay_contract_address=descriptor.relay_contract_address,
            )
            signed = Account.sign_message(
                encode_defunct(primitive=_to_bytes(tx_id)),
                private_key=identity.private_key,
            )
        except Exception as exc:
            raise SigningError(f"signing failed for {identity.address}: {exc.__class__.__name__}") from exc

        return RelayTransaction(
            relay_tx_id=tx_id,
            from_address=identity.address,
            to=Web3.to_checksum_address(descriptor.to),
            gas=int(descriptor.gas),
            data=descriptor.data,
            deadline_block_number=int(descriptor.deadline_block_number),
            compensation=int(descriptor.compensation),
            relay_contract_address=Web3.to_checksum_address(descriptor.relay_contract_address),
            signature=Web3.to_hex(signed.signature),
        )
