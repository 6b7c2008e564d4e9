# certregistry/engine.py
import logging
from typing import List, Optional

from certregistry import crud
from certregistry.blockchain import Web3Ledger
from certregistry.errors import AlreadyExists, NotFound, RegistryError, StatusUnchanged
from certregistry.events import Notifier
from certregistry.ledger import Finality, Ledger, SqlLedger, TransactionReceipt
from certregistry.registry import (
    AuthorizationPolicy,
    CertificateRecord,
    SingleAuthority,
    StatusHistoryEntry,
    coerce_status,
    fingerprint_hex,
    normalize_label,
    require_authority,
    to_fingerprint,
)

log = logging.getLogger("registry")


class RegistryEngine:
    """
    Front door for registry mutations and reads.

    Mutations are checked with cheap reads before anything is submitted, so
    duplicates, unknown fingerprints and no-op transitions never cost a ledger
    write. The ledger still applies the authoritative checks when it commits.
    Nothing is retried: every error reaches the caller with its own kind.
    """

    def __init__(
        self,
        ledger: Ledger,
        notifier: Optional[Notifier] = None,
        policy: Optional[AuthorizationPolicy] = None,
        index_bind=None,
    ):
        self.ledger = ledger
        self.notifier = notifier or Notifier()
        self.policy = policy
        self.index_bind = index_bind

    def _settle(self, receipt: TransactionReceipt, what: str):
        if receipt.status == Finality.PENDING:
            # not final: no notification, the caller re-queries before retrying
            log.warning("%s pending confirmation (tx %s)", what, receipt.tx_hash)
            return
        log.info("%s committed in block %s (tx %s)", what, receipt.block_number, receipt.tx_hash)
        for event in receipt.events:
            self.notifier.publish(event)

    # ---------- mutations ----------
    def issue(self, fingerprint, label: str, caller: str) -> TransactionReceipt:
        try:
            if self.policy is not None:
                require_authority(self.policy, caller)
            fp = to_fingerprint(fingerprint)
            text = normalize_label(label)
            if self.ledger.get_certificate(fp).exists:
                raise AlreadyExists(f"certificate {fingerprint_hex(fp)} is already registered")

            receipt = self.ledger.submit_issue(fp, text, caller)
        except RegistryError as e:
            log.warning("Issue rejected (%s): %s", e.kind, e.message)
            raise

        self._settle(receipt, f"Issue of {fingerprint_hex(fp)}")
        return receipt

    def change_status(self, fingerprint, new_status, reason: str, caller: str) -> TransactionReceipt:
        try:
            if self.policy is not None:
                require_authority(self.policy, caller)
            fp = to_fingerprint(fingerprint)
            target = coerce_status(new_status)
            current = self.ledger.get_certificate(fp)
            if not current.exists:
                raise NotFound(f"{fingerprint_hex(fp)} is not registered")
            if current.status == target:
                raise StatusUnchanged(f"certificate is already {target.name.title()}")

            receipt = self.ledger.submit_status_change(fp, target, reason or "", caller)
        except RegistryError as e:
            log.warning("Status change rejected (%s): %s", e.kind, e.message)
            raise

        self._settle(receipt, f"Status of {fingerprint_hex(fp)} -> {target.name}")
        return receipt

    # ---------- reads ----------
    def lookup(self, fingerprint) -> CertificateRecord:
        return self.ledger.get_certificate(to_fingerprint(fingerprint, allow_zero=True))

    def is_valid(self, fingerprint) -> bool:
        return self.ledger.is_valid(to_fingerprint(fingerprint, allow_zero=True))

    def get_history(self, fingerprint) -> List[StatusHistoryEntry]:
        return self.ledger.get_history(to_fingerprint(fingerprint, allow_zero=True))

    def get_history_count(self, fingerprint) -> int:
        return self.ledger.get_history_count(to_fingerprint(fingerprint, allow_zero=True))


def build_engine(cfg, bind=None) -> RegistryEngine:
    """
    Wire the engine for the configured backend. Every committed notification
    is also written to the event index.
    """
    authority = cfg.authority_address()
    if not authority:
        raise ValueError("AUTHORITY_ADDRESS or ADMIN_PK must be configured")
    policy = SingleAuthority(authority)
    index_bind = bind or crud.engine
    crud.init_db(index_bind)

    if cfg.LEDGER_BACKEND == "web3":
        ledger = Web3Ledger.from_settings(cfg)
    else:
        ledger = SqlLedger(index_bind, policy)

    notifier = Notifier()
    notifier.subscribe(lambda event: crud.record_event(event, bind=index_bind))
    log.info("Registry engine ready (backend=%s, authority=%s)", cfg.LEDGER_BACKEND, policy.address)
    return RegistryEngine(ledger, notifier, policy, index_bind=index_bind)
