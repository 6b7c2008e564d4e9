# certregistry/crud.py

from typing import Dict, List, Optional

from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, select, create_engine, func
from certregistry.models import EventIndex
from certregistry.registry import CertStatus, CertificateIssued, Notification, fingerprint_hex
from certregistry.settings import settings


# ---------- Database Setup ----------
def make_engine(url: str):
    """Engine factory; in-memory SQLite gets a single shared connection."""
    if url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if url.startswith("sqlite"):
        return create_engine(url, echo=False, connect_args={"check_same_thread": False})
    return create_engine(url, echo=False)


engine = make_engine(settings.DATABASE_URL)


def init_db(bind=None):
    """Initialize all SQLModel tables."""
    SQLModel.metadata.create_all(bind or engine)


# ---------- EVENT INDEX ----------
def record_event(event: Notification, bind=None) -> Optional[EventIndex]:
    """Store a notification. Replaying the same on-ledger event twice is a no-op."""
    fp = fingerprint_hex(event.fingerprint)
    with Session(bind or engine) as s:
        if event.tx_hash:
            q = select(EventIndex).where(
                EventIndex.tx_hash == event.tx_hash,
                EventIndex.name == event.name,
                EventIndex.fingerprint == fp,
            )
            if s.exec(q).first():
                return None

        if isinstance(event, CertificateIssued):
            row = EventIndex(
                name=event.name,
                fingerprint=fp,
                label=event.label,
                status=int(CertStatus.ACTIVE),
                actor=event.issuer,
                timestamp=event.issued_at,
                tx_hash=event.tx_hash,
                block_number=event.block_number,
            )
        else:
            row = EventIndex(
                name=event.name,
                fingerprint=fp,
                status=int(event.new_status),
                previous_status=int(event.previous_status) if event.previous_status is not None else None,
                actor=event.changed_by,
                reason=event.reason,
                timestamp=event.changed_at,
                tx_hash=event.tx_hash,
                block_number=event.block_number,
            )
        s.add(row)
        s.commit()
        s.refresh(row)
        return row


def list_events(limit: int = 50, fingerprint: Optional[str] = None, bind=None) -> List[EventIndex]:
    """List recent indexed notifications, newest first."""
    with Session(bind or engine) as s:
        q = select(EventIndex)
        if fingerprint:
            q = q.where(EventIndex.fingerprint == fingerprint.lower())
        q = q.order_by(EventIndex.id.desc()).limit(limit)
        return s.exec(q).all()


def list_indexed_certificates(bind=None) -> List[Dict]:
    """
    Rebuild the 'all certificates' view by replaying indexed events in order.
    The registry itself has no enumeration; this is the only listing there is.
    """
    certs: Dict[str, Dict] = {}
    with Session(bind or engine) as s:
        for ev in s.exec(select(EventIndex).order_by(EventIndex.id)).all():
            if ev.name == "CertificateIssued":
                certs[ev.fingerprint] = {
                    "fingerprint": ev.fingerprint,
                    "label": ev.label,
                    "issuer": ev.actor,
                    "issued_at": ev.timestamp,
                    "status": CertStatus(ev.status),
                    "history_count": 0,
                }
            elif ev.fingerprint in certs:
                certs[ev.fingerprint]["status"] = CertStatus(ev.status)
                certs[ev.fingerprint]["history_count"] += 1
    return list(certs.values())


def last_indexed_block(bind=None) -> Optional[int]:
    with Session(bind or engine) as s:
        return s.exec(select(func.max(EventIndex.block_number))).first()
