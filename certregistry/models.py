# certregistry/models.py
from typing import Optional
from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field


class CertificateRow(SQLModel, table=True):
    fingerprint: str = Field(primary_key=True)  # 0x-prefixed hex
    label: str = Field(max_length=256)
    issued_at: int
    issuer: str
    status: int = 0


class HistoryRow(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    fingerprint: str = Field(index=True, foreign_key="certificaterow.fingerprint")
    seq: int
    status: int
    changed_at: int
    changed_by: str
    reason: str = ""
    block_number: int


class LedgerTransaction(SQLModel, table=True):
    block_number: Optional[int] = Field(default=None, primary_key=True)
    tx_hash: str = Field(index=True, unique=True)
    action: str
    fingerprint: str
    caller: str
    timestamp: int


class EventIndex(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("tx_hash", "name", "fingerprint"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    fingerprint: str = Field(index=True)
    label: Optional[str] = None
    status: Optional[int] = None
    previous_status: Optional[int] = None
    actor: str
    reason: Optional[str] = None
    timestamp: int
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
