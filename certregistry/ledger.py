# certregistry/ledger.py
"""
Ledger adapters.

The registry never owns global state itself: it hands each transition to a
ledger that applies it atomically and in a total order, then reports
finality through a `TransactionReceipt`. `SqlLedger` is the local substrate
used for development and tests; `blockchain.Web3Ledger` talks to the
deployed contract.
"""
import abc
import contextlib
import logging
import threading
import time
from enum import Enum
from typing import Callable, List, Optional

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, select, func
from web3 import Web3

from certregistry import registry
from certregistry.crud import init_db
from certregistry.errors import TransitionRejected
from certregistry.models import CertificateRow, HistoryRow, LedgerTransaction
from certregistry.registry import (
    AuthorizationPolicy,
    CertificateRecord,
    CertStatus,
    Notification,
    StatusHistoryEntry,
    fingerprint_hex,
    to_fingerprint,
)

log = logging.getLogger("ledger")


class Finality(str, Enum):
    CONFIRMED = "confirmed"
    # broadcast, not yet final: neither committed nor failed
    PENDING = "pending"


class TransactionReceipt(BaseModel):
    tx_hash: str
    block_number: Optional[int] = None
    gas_used: int = 0
    status: Finality = Finality.CONFIRMED
    events: List[Notification] = []


class Ledger(abc.ABC):
    """Submit-and-await-finality interface plus committed-state reads."""

    @abc.abstractmethod
    def submit_issue(self, fingerprint: bytes, label: str, caller: str) -> TransactionReceipt:
        ...

    @abc.abstractmethod
    def submit_status_change(
        self, fingerprint: bytes, new_status: CertStatus, reason: str, caller: str
    ) -> TransactionReceipt:
        ...

    @abc.abstractmethod
    def get_certificate(self, fingerprint: bytes) -> CertificateRecord:
        ...

    @abc.abstractmethod
    def get_history(self, fingerprint: bytes) -> List[StatusHistoryEntry]:
        ...

    @abc.abstractmethod
    def get_history_count(self, fingerprint: bytes) -> int:
        ...

    def is_valid(self, fingerprint: bytes) -> bool:
        return registry.is_valid(self.get_certificate(fingerprint))


def _row_to_record(row: CertificateRow) -> CertificateRecord:
    return CertificateRecord(
        fingerprint=to_fingerprint(row.fingerprint),
        exists=True,
        label=row.label,
        issued_at=row.issued_at,
        issuer=row.issuer,
        status=CertStatus(row.status),
    )


class SqlLedger(Ledger):
    """
    Ledger substrate on a SQL database.

    One lock serializes all mutations and each mutation is a single DB
    transaction: record, history entry and transaction row commit together
    or not at all. Every commit is one "block".
    """

    def __init__(self, bind, policy: AuthorizationPolicy, clock: Callable[[], float] = time.time):
        self.engine = bind
        self.policy = policy
        self.clock = clock
        self._lock = threading.Lock()
        # a StaticPool engine (in-memory SQLite) shares one connection between
        # threads, so reads would see a writer's uncommitted rows unless serialized
        self._shared_connection = isinstance(bind.pool, StaticPool)
        init_db(bind)

    @contextlib.contextmanager
    def _read_session(self):
        if self._shared_connection:
            with self._lock, Session(self.engine) as s:
                yield s
        else:
            with Session(self.engine) as s:
                yield s

    def _now(self) -> int:
        return int(self.clock())

    def _load(self, s: Session, fp_hex: str) -> Optional[CertificateRecord]:
        row = s.get(CertificateRow, fp_hex)
        return _row_to_record(row) if row else None

    def _open_block(self, s: Session, action: str, fp_hex: str, caller: str, now: int) -> LedgerTransaction:
        last = s.exec(select(func.max(LedgerTransaction.block_number))).first()
        block = (last or 0) + 1
        tx_hash = Web3.to_hex(Web3.keccak(text=f"{block}|{action}|{fp_hex}|{caller}|{now}"))
        return LedgerTransaction(
            block_number=block,
            tx_hash=tx_hash,
            action=action,
            fingerprint=fp_hex,
            caller=caller,
            timestamp=now,
        )

    def _commit(self, s: Session, tx: LedgerTransaction):
        try:
            s.commit()
        except SQLAlchemyError as e:
            s.rollback()
            log.exception("Ledger commit failed for %s", tx.action)
            raise TransitionRejected(f"ledger commit failed: {e}") from e

    def submit_issue(self, fingerprint, label, caller) -> TransactionReceipt:
        fp_hex = fingerprint_hex(to_fingerprint(fingerprint, allow_zero=True))
        with self._lock, Session(self.engine) as s:
            now = self._now()
            current = self._load(s, fp_hex)
            record, event = registry.issue(current, fingerprint, label, caller, now, self.policy)

            tx = self._open_block(s, "issueCertificate", fp_hex, record.issuer, now)
            s.add(
                CertificateRow(
                    fingerprint=fp_hex,
                    label=record.label,
                    issued_at=record.issued_at,
                    issuer=record.issuer,
                    status=int(record.status),
                )
            )
            s.add(tx)
            self._commit(s, tx)
            tx_hash, block = tx.tx_hash, tx.block_number

        event = event.model_copy(update={"tx_hash": tx_hash, "block_number": block})
        return TransactionReceipt(tx_hash=tx_hash, block_number=block, events=[event])

    def submit_status_change(self, fingerprint, new_status, reason, caller) -> TransactionReceipt:
        fp = to_fingerprint(fingerprint, allow_zero=True)
        fp_hex = fingerprint_hex(fp)
        with self._lock, Session(self.engine) as s:
            now = self._now()
            current = self._load(s, fp_hex) or CertificateRecord.absent(fp)
            record, entry, event = registry.change_status(
                current, new_status, reason, caller, now, self.policy
            )

            tx = self._open_block(s, "updateStatus", fp_hex, entry.changed_by, now)
            row = s.get(CertificateRow, fp_hex)
            row.status = int(record.status)
            seq = s.exec(
                select(func.count()).select_from(HistoryRow).where(HistoryRow.fingerprint == fp_hex)
            ).one()
            s.add(row)
            s.add(
                HistoryRow(
                    fingerprint=fp_hex,
                    seq=seq + 1,
                    status=int(entry.status),
                    changed_at=entry.changed_at,
                    changed_by=entry.changed_by,
                    reason=entry.reason,
                    block_number=tx.block_number,
                )
            )
            s.add(tx)
            self._commit(s, tx)
            tx_hash, block = tx.tx_hash, tx.block_number

        event = event.model_copy(update={"tx_hash": tx_hash, "block_number": block})
        return TransactionReceipt(tx_hash=tx_hash, block_number=block, events=[event])

    def get_certificate(self, fingerprint) -> CertificateRecord:
        fp = to_fingerprint(fingerprint, allow_zero=True)
        with self._read_session() as s:
            return self._load(s, fingerprint_hex(fp)) or CertificateRecord.absent(fp)

    def get_history(self, fingerprint) -> List[StatusHistoryEntry]:
        fp_hex = fingerprint_hex(to_fingerprint(fingerprint, allow_zero=True))
        with self._read_session() as s:
            q = select(HistoryRow).where(HistoryRow.fingerprint == fp_hex).order_by(HistoryRow.seq)
            return [
                StatusHistoryEntry(
                    status=CertStatus(h.status),
                    changed_at=h.changed_at,
                    changed_by=h.changed_by,
                    reason=h.reason,
                )
                for h in s.exec(q).all()
            ]

    def get_history_count(self, fingerprint) -> int:
        fp_hex = fingerprint_hex(to_fingerprint(fingerprint, allow_zero=True))
        with self._read_session() as s:
            q = select(func.count()).select_from(HistoryRow).where(HistoryRow.fingerprint == fp_hex)
            return s.exec(q).one()
