# certregistry/main.py
import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, UploadFile, File, Request, Response
from fastapi.responses import JSONResponse
from web3 import Web3

from .settings import settings
from .crud import init_db, list_events, list_indexed_certificates
from .engine import RegistryEngine, build_engine
from .errors import (
    AlreadyExists,
    EmptyLabel,
    InvalidFingerprint,
    InvalidStatus,
    LabelTooLong,
    NotFound,
    RegistryError,
    StatusUnchanged,
    TransitionRejected,
    Unauthorized,
)
from .identity import NonceTracker, build_action_hash, issue_payload, recover_caller, status_payload
from .ledger import Finality, TransactionReceipt
from .registry import fingerprint_hex, to_fingerprint
from .schemas import (
    CertificateOut,
    ChangeStatusIn,
    EventOut,
    FingerprintResponse,
    HistoryCountOut,
    HistoryEntryOut,
    IndexedCertificateOut,
    IssueCertificateIn,
    TxOut,
    ValidityOut,
)
from .tasks import start_event_sync, stop_event_sync

log = logging.getLogger("api")

app = FastAPI(title="Certificate Registry Backend")

ERROR_STATUS = {
    InvalidFingerprint: 400,
    InvalidStatus: 400,
    EmptyLabel: 400,
    LabelTooLong: 400,
    Unauthorized: 403,
    NotFound: 404,
    AlreadyExists: 409,
    StatusUnchanged: 409,
    TransitionRejected: 502,
}

_engine: Optional[RegistryEngine] = None
nonces = NonceTracker()


def get_engine() -> RegistryEngine:
    global _engine
    if _engine is None:
        _engine = build_engine(settings)
    return _engine


@app.on_event("startup")
def startup():
    init_db()
    if settings.LEDGER_BACKEND == "web3":
        start_event_sync(get_engine().ledger)


@app.on_event("shutdown")
def shutdown():
    stop_event_sync()


@app.exception_handler(RegistryError)
async def registry_error_handler(request: Request, exc: RegistryError):
    return JSONResponse(
        status_code=ERROR_STATUS.get(type(exc), 500),
        content={"detail": exc.message, "error": exc.kind},
    )


def resolve_caller(action: str, fingerprint: str, payload: str, signature: Optional[str], nonce: Optional[str]) -> str:
    """
    The signer of the request when it is signed, otherwise the account of
    the server's own admin key.
    """
    if signature:
        if not nonce:
            raise Unauthorized("signed requests must carry a nonce")
        try:
            raw = build_action_hash(settings.CONTRACT_ADDRESS, settings.CHAIN_ID, action, fingerprint, payload, nonce)
        except ValueError as e:
            raise Unauthorized(f"malformed signed request: {e}") from e
        signer = recover_caller(raw, signature)
        nonces.consume(signer, nonce)
        return signer

    admin = settings.admin_address()
    if not admin:
        raise Unauthorized("no caller identity: sign the request or configure ADMIN_PK")
    return admin


def _normalized(fingerprint: str) -> str:
    return fingerprint_hex(to_fingerprint(fingerprint, allow_zero=True))


def _tx_out(receipt: TransactionReceipt, response: Response, fingerprint: str, new_status=None) -> TxOut:
    if receipt.status == Finality.PENDING:
        response.status_code = 202
    return TxOut(
        tx_hash=receipt.tx_hash,
        block_number=receipt.block_number,
        gas_used=receipt.gas_used,
        status=receipt.status.value,
        fingerprint=fingerprint_hex(to_fingerprint(fingerprint)),
        new_status=new_status,
    )


@app.get("/health")
def health():
    return {"status": "ok", "backend": settings.LEDGER_BACKEND}


@app.post("/fingerprint", response_model=FingerprintResponse)
async def fingerprint_file(file: UploadFile = File(...)):
    """
    Keccak-256 content fingerprint of an uploaded document.
    The document itself is never stored.
    """
    content = await file.read()
    return {
        "filename": file.filename,
        "size": len(content),
        "fingerprint": Web3.to_hex(Web3.keccak(content)),
    }


@app.post("/certificates", response_model=TxOut)
def issue_certificate_endpoint(data: IssueCertificateIn, response: Response, engine: RegistryEngine = Depends(get_engine)):
    caller = resolve_caller("issueCertificate", data.fingerprint, issue_payload(data.label), data.signature, data.nonce)
    receipt = engine.issue(data.fingerprint, data.label, caller)
    return _tx_out(receipt, response, data.fingerprint)


@app.post("/certificates/{fingerprint}/status", response_model=TxOut)
def change_status_endpoint(
    fingerprint: str, data: ChangeStatusIn, response: Response, engine: RegistryEngine = Depends(get_engine)
):
    caller = resolve_caller(
        "updateStatus", fingerprint, status_payload(data.status, data.reason), data.signature, data.nonce
    )
    receipt = engine.change_status(fingerprint, data.status, data.reason, caller)
    return _tx_out(receipt, response, fingerprint, new_status=data.status)


@app.get("/certificates", response_model=List[IndexedCertificateOut])
def list_certificates_endpoint(engine: RegistryEngine = Depends(get_engine)):
    """Listing rebuilt from the event index; the registry itself cannot enumerate."""
    return list_indexed_certificates(bind=engine.index_bind)


@app.get("/certificates/{fingerprint}", response_model=CertificateOut)
def get_certificate_endpoint(fingerprint: str, engine: RegistryEngine = Depends(get_engine)):
    return CertificateOut.from_record(engine.lookup(fingerprint))


@app.get("/certificates/{fingerprint}/valid", response_model=ValidityOut)
def is_valid_endpoint(fingerprint: str, engine: RegistryEngine = Depends(get_engine)):
    return ValidityOut(fingerprint=_normalized(fingerprint), valid=engine.is_valid(fingerprint))


@app.get("/certificates/{fingerprint}/history", response_model=List[HistoryEntryOut])
def history_endpoint(fingerprint: str, engine: RegistryEngine = Depends(get_engine)):
    return [HistoryEntryOut.from_entry(e) for e in engine.get_history(fingerprint)]


@app.get("/certificates/{fingerprint}/history/count", response_model=HistoryCountOut)
def history_count_endpoint(fingerprint: str, engine: RegistryEngine = Depends(get_engine)):
    return HistoryCountOut(fingerprint=_normalized(fingerprint), count=engine.get_history_count(fingerprint))


@app.get("/events", response_model=List[EventOut])
def events_endpoint(limit: int = 50, fingerprint: Optional[str] = None, engine: RegistryEngine = Depends(get_engine)):
    rows = list_events(limit=limit, fingerprint=fingerprint, bind=engine.index_bind)
    return [EventOut.model_validate(r, from_attributes=True) for r in rows]
