# certregistry/identity.py
import threading
from typing import Optional, Set

from eth_account.messages import encode_defunct
from eth_account import Account
from hexbytes import HexBytes
from web3 import Web3

from certregistry.errors import Unauthorized
from certregistry.registry import ZERO_ADDRESS, to_fingerprint


def _bytes32(value) -> bytes:
    if isinstance(value, str):
        value = HexBytes(value)
    b = bytes(value)
    if len(b) != 32:
        raise ValueError("nonce must be 32 bytes")
    return b


def build_action_hash(contract_address: Optional[str], chain_id: int, action: str, fingerprint, payload: str, nonce):
    """
    Solidity-style keccak256 of:
      keccak256(address(registry), uint256(chainId), string(action),
                bytes32(fingerprint), string(payload), bytes32(nonce))
    `payload` is the label for issuance and "<status>:<reason>" for status changes.
    Returns raw bytes (32 bytes).
    """
    types = ["address", "uint256", "string", "bytes32", "string", "bytes32"]
    values = [
        Web3.to_checksum_address(contract_address or ZERO_ADDRESS),
        int(chain_id),
        action,
        to_fingerprint(fingerprint),
        payload,
        _bytes32(nonce),
    ]
    return Web3.solidity_keccak(types, values)


def issue_payload(label: str) -> str:
    return label.strip()


def status_payload(status: int, reason: str) -> str:
    return f"{int(status)}:{reason or ''}"


def recover_caller(raw_hash, signature: str) -> str:
    """
    Recover the address that signed `raw_hash` with personal_sign semantics
    (signMessage(arrayify(rawHash)) on the client side).
    """
    if isinstance(raw_hash, str):
        raw_hash = HexBytes(raw_hash)
    msg = encode_defunct(primitive=bytes(raw_hash))
    try:
        signer = Account.recover_message(msg, signature=signature)
    except Exception as e:
        raise Unauthorized(f"signature could not be verified: {e}") from e
    return Web3.to_checksum_address(signer)


def sign_action(raw_hash, private_key: str) -> str:
    """Client-side counterpart of recover_caller, used by scripts and tests."""
    signed = Account.sign_message(encode_defunct(primitive=bytes(raw_hash)), private_key=private_key)
    return Web3.to_hex(signed.signature)


class NonceTracker:
    """Rejects a signed request whose nonce was already used by the same signer."""

    def __init__(self):
        self._seen: Set[tuple] = set()
        self._lock = threading.Lock()

    def consume(self, signer: str, nonce):
        key = (signer.lower(), _bytes32(nonce))
        with self._lock:
            if key in self._seen:
                raise Unauthorized("signature nonce already used")
            self._seen.add(key)
