# certregistry/registry.py
"""
Registry state machine.

Everything in here is pure: the functions take the current record, the
ledger time and an authorization policy, and either return the new state
plus the notification to emit, or raise. Storage and ledger access live in
the adapters (`ledger.py`, `blockchain.py`).
"""
import re
from enum import IntEnum
from typing import Literal, NamedTuple, Optional, Protocol, Union

from hexbytes import HexBytes
from pydantic import BaseModel, ConfigDict
from web3 import Web3

from .errors import (
    AlreadyExists,
    EmptyLabel,
    InvalidFingerprint,
    InvalidStatus,
    LabelTooLong,
    NotFound,
    StatusUnchanged,
    Unauthorized,
)

FINGERPRINT_SIZE = 32
ZERO_FINGERPRINT = b"\x00" * FINGERPRINT_SIZE
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
MAX_LABEL_LENGTH = 256

_HEX_FINGERPRINT = re.compile(r"^0x[0-9a-fA-F]{64}$")


class CertStatus(IntEnum):
    ACTIVE = 0
    REVOKED = 1
    UPDATED = 2


# ---------- Records ----------
class CertificateRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    fingerprint: bytes
    exists: bool = False
    label: str = ""
    issued_at: int = 0
    issuer: str = ZERO_ADDRESS
    status: CertStatus = CertStatus.ACTIVE

    @classmethod
    def absent(cls, fingerprint: bytes) -> "CertificateRecord":
        """Negative lookup result: not an error, just `exists=False` and zero values."""
        return cls(fingerprint=fingerprint)


class StatusHistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: CertStatus
    changed_at: int
    changed_by: str
    reason: str = ""


# ---------- Notifications ----------
class CertificateIssued(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: Literal["CertificateIssued"] = "CertificateIssued"
    fingerprint: bytes
    label: str
    issuer: str
    issued_at: int
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None


class StatusUpdated(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: Literal["StatusUpdated"] = "StatusUpdated"
    fingerprint: bytes
    previous_status: Optional[CertStatus] = None
    new_status: CertStatus
    reason: str = ""
    changed_by: str
    changed_at: int
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None


Notification = Union[CertificateIssued, StatusUpdated]


class StatusTransition(NamedTuple):
    record: CertificateRecord
    entry: StatusHistoryEntry
    event: StatusUpdated


# ---------- Authorization ----------
class AuthorizationPolicy(Protocol):
    def is_authorized(self, caller: str) -> bool:
        ...


class SingleAuthority:
    """One address may mutate the registry, the same way the contract owner does."""

    def __init__(self, address: str):
        self.address = Web3.to_checksum_address(address)

    def is_authorized(self, caller: str) -> bool:
        return bool(caller) and caller.lower() == self.address.lower()

    def __repr__(self):
        return f"SingleAuthority({self.address})"


def normalize_identity(caller: str) -> str:
    """Checksum Ethereum addresses; other identities a policy accepts are kept as given."""
    if isinstance(caller, str) and Web3.is_address(caller.lower()):
        return Web3.to_checksum_address(caller)
    return caller


def require_authority(policy: AuthorizationPolicy, caller: str):
    if not policy.is_authorized(caller):
        raise Unauthorized(f"{caller or '<anonymous>'} is not permitted to modify the registry")


# ---------- Input normalization ----------
def to_fingerprint(value, allow_zero: bool = False) -> bytes:
    """
    Accepts 32 raw bytes or a '0x' + 64 hex digit string and returns raw bytes.
    Unlike ABI bytes32 coercion nothing is padded or truncated.
    """
    if isinstance(value, (bytes, bytearray, HexBytes)):
        raw = bytes(value)
    elif isinstance(value, str):
        s = value.strip()
        if not _HEX_FINGERPRINT.match(s):
            raise InvalidFingerprint("fingerprint must be a 32-byte hex string (0x + 64 hex digits)")
        raw = bytes.fromhex(s[2:])
    else:
        raise InvalidFingerprint(f"unsupported fingerprint type: {type(value).__name__}")

    if len(raw) != FINGERPRINT_SIZE:
        raise InvalidFingerprint(f"fingerprint must be {FINGERPRINT_SIZE} bytes, got {len(raw)}")
    if raw == ZERO_FINGERPRINT and not allow_zero:
        raise InvalidFingerprint("the zero fingerprint is reserved")
    return raw


def fingerprint_hex(fingerprint: bytes) -> str:
    return "0x" + bytes(fingerprint).hex()


def normalize_label(label: Optional[str]) -> str:
    text = (label or "").strip()
    if not text:
        raise EmptyLabel("label cannot be empty")
    if len(text) > MAX_LABEL_LENGTH:
        raise LabelTooLong(f"label exceeds {MAX_LABEL_LENGTH} characters ({len(text)})")
    return text


def coerce_status(value) -> CertStatus:
    if isinstance(value, CertStatus):
        return value
    try:
        if isinstance(value, str) and not value.strip().isdigit():
            return CertStatus[value.strip().upper()]
        return CertStatus(int(value))
    except (KeyError, ValueError, TypeError) as e:
        raise InvalidStatus(f"unknown status {value!r}; use 0 (Active), 1 (Revoked) or 2 (Updated)") from e


# ---------- Transitions ----------
def issue(
    current: Optional[CertificateRecord],
    fingerprint,
    label: str,
    caller: str,
    now: int,
    policy: AuthorizationPolicy,
):
    """Create a record. Returns (record, CertificateIssued)."""
    require_authority(policy, caller)
    fp = to_fingerprint(fingerprint)
    text = normalize_label(label)
    if current is not None and current.exists:
        raise AlreadyExists(f"certificate {fingerprint_hex(fp)} is already registered")

    issuer = normalize_identity(caller)
    record = CertificateRecord(
        fingerprint=fp,
        exists=True,
        label=text,
        issued_at=int(now),
        issuer=issuer,
        status=CertStatus.ACTIVE,
    )
    event = CertificateIssued(fingerprint=fp, label=text, issuer=issuer, issued_at=int(now))
    return record, event


def change_status(
    current: Optional[CertificateRecord],
    new_status,
    reason: Optional[str],
    caller: str,
    now: int,
    policy: AuthorizationPolicy,
) -> StatusTransition:
    """Move an existing record to another status and produce the history entry to append."""
    require_authority(policy, caller)
    if current is None or not current.exists:
        fp = fingerprint_hex(current.fingerprint) if current is not None else "certificate"
        raise NotFound(f"{fp} is not registered")

    target = coerce_status(new_status)
    if target == current.status:
        raise StatusUnchanged(f"certificate is already {target.name.title()}")

    changed_by = normalize_identity(caller)
    entry = StatusHistoryEntry(
        status=target,
        changed_at=int(now),
        changed_by=changed_by,
        reason=reason or "",
    )
    event = StatusUpdated(
        fingerprint=current.fingerprint,
        previous_status=current.status,
        new_status=target,
        reason=entry.reason,
        changed_by=changed_by,
        changed_at=int(now),
    )
    return StatusTransition(current.model_copy(update={"status": target}), entry, event)


def is_valid(record: Optional[CertificateRecord]) -> bool:
    return record is not None and record.exists and record.status == CertStatus.ACTIVE
