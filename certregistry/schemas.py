# certregistry/schemas.py
from pydantic import BaseModel, Field
from typing import List, Optional

from certregistry.registry import CertStatus, CertificateRecord, StatusHistoryEntry, fingerprint_hex


class FingerprintResponse(BaseModel):
    filename: Optional[str]
    size: int
    fingerprint: str


class IssueCertificateIn(BaseModel):
    fingerprint: str
    label: str
    signature: Optional[str] = None
    nonce: Optional[str] = None


class ChangeStatusIn(BaseModel):
    status: CertStatus
    reason: str = ""
    signature: Optional[str] = None
    nonce: Optional[str] = None


class TxOut(BaseModel):
    tx_hash: str
    block_number: Optional[int] = None
    gas_used: int
    status: str
    fingerprint: str
    new_status: Optional[CertStatus] = None


class CertificateOut(BaseModel):
    fingerprint: str
    exists: bool
    label: str
    issued_at: int
    issuer: str
    status: CertStatus
    status_name: str

    @classmethod
    def from_record(cls, record: CertificateRecord) -> "CertificateOut":
        return cls(
            fingerprint=fingerprint_hex(record.fingerprint),
            exists=record.exists,
            label=record.label,
            issued_at=record.issued_at,
            issuer=record.issuer,
            status=record.status,
            status_name=record.status.name.title(),
        )


class HistoryEntryOut(BaseModel):
    status: CertStatus
    status_name: str
    changed_at: int
    changed_by: str
    reason: str

    @classmethod
    def from_entry(cls, entry: StatusHistoryEntry) -> "HistoryEntryOut":
        return cls(
            status=entry.status,
            status_name=entry.status.name.title(),
            changed_at=entry.changed_at,
            changed_by=entry.changed_by,
            reason=entry.reason,
        )


class ValidityOut(BaseModel):
    fingerprint: str
    valid: bool


class HistoryCountOut(BaseModel):
    fingerprint: str
    count: int


class EventOut(BaseModel):
    name: str
    fingerprint: str
    label: Optional[str] = None
    status: Optional[int] = None
    previous_status: Optional[int] = None
    actor: str
    reason: Optional[str] = None
    timestamp: int
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None


class IndexedCertificateOut(BaseModel):
    fingerprint: str
    label: str
    issuer: str
    issued_at: int
    status: CertStatus
    history_count: int = Field(ge=0)
