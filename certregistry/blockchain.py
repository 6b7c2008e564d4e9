# certregistry/blockchain.py
import json, os
import logging
import threading
from typing import Dict, List, Optional, Type

from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception
from web3.logs import DISCARD
from hexbytes import HexBytes

from certregistry.errors import (
    AlreadyExists,
    EmptyLabel,
    InvalidFingerprint,
    NotFound,
    RegistryError,
    StatusUnchanged,
    TransitionRejected,
    Unauthorized,
)
from certregistry.ledger import Finality, Ledger, TransactionReceipt
from certregistry.registry import (
    CertificateIssued,
    CertificateRecord,
    CertStatus,
    Notification,
    StatusHistoryEntry,
    StatusUpdated,
    ZERO_ADDRESS,
    to_fingerprint,
)
from certregistry.settings import Settings, normalize_private_key

log = logging.getLogger("blockchain")

# load ABI
HERE = os.path.dirname(__file__)
ABI_PATH = os.path.join(HERE, "artifacts", "CertificateRegistry.json")


def load_abi(path: str = ABI_PATH) -> list:
    with open(path) as f:
        artifact = json.load(f)
    return artifact.get("abi", artifact) if isinstance(artifact, dict) else artifact  # bare abi array also works


# contract custom error name -> registry error kind
REVERT_ERRORS: Dict[str, Type[RegistryError]] = {
    "InvalidHash": InvalidFingerprint,
    "LabelCannotBeEmpty": EmptyLabel,
    "CertificateAlreadyExists": AlreadyExists,
    "CertificateNotFound": NotFound,
    "StatusUnchanged": StatusUnchanged,
    "OwnableUnauthorizedAccount": Unauthorized,
}


def error_selectors(abi: list) -> Dict[str, str]:
    """
    4-byte selector ('0x' + 8 hex) -> custom error name, for every error in the ABI.
    """
    selectors = {}
    for item in abi:
        if item.get("type") != "error":
            continue
        signature = "{}({})".format(item["name"], ",".join(i["type"] for i in item.get("inputs", [])))
        selectors[Web3.to_hex(Web3.keccak(text=signature)[:4])] = item["name"]
    return selectors


def decode_revert(exc: Exception, selectors: Dict[str, str]) -> RegistryError:
    """Turn a contract revert into the matching registry error; anything unknown is TransitionRejected."""
    data = getattr(exc, "data", None)
    name = None
    if isinstance(data, (bytes, bytearray)):
        data = Web3.to_hex(data)
    if isinstance(data, str) and data.startswith("0x") and len(data) >= 10:
        name = selectors.get(data[:10].lower())
    if name is None:
        # node-formatted messages, e.g. "reverted with custom error 'InvalidHash()'"
        message = str(exc)
        for candidate in REVERT_ERRORS:
            if candidate in message:
                name = candidate
                break
    error_cls = REVERT_ERRORS.get(name, TransitionRejected)
    return error_cls(f"{name or 'revert'}: {exc}")


def _issued_from_log(entry) -> CertificateIssued:
    args = entry["args"]
    return CertificateIssued(
        fingerprint=bytes(args["certHash"]),
        label=args["label"],
        issuer=Web3.to_checksum_address(args["issuer"]),
        issued_at=int(args["issuedAt"]),
        tx_hash=Web3.to_hex(entry["transactionHash"]),
        block_number=int(entry["blockNumber"]),
    )


def _updated_from_log(entry) -> StatusUpdated:
    args = entry["args"]
    return StatusUpdated(
        fingerprint=bytes(args["certHash"]),
        previous_status=CertStatus(args["oldStatus"]),
        new_status=CertStatus(args["newStatus"]),
        reason=args["reason"],
        changed_by=Web3.to_checksum_address(args["changedBy"]),
        changed_at=int(args["changedAt"]),
        tx_hash=Web3.to_hex(entry["transactionHash"]),
        block_number=int(entry["blockNumber"]),
    )


def _send_signed_transaction(w3, signed_tx):
    """
    Helper that works with both eth-account return shapes:
      - signed_tx.rawTransaction  (older)
      - signed_tx.raw_transaction (newer)
    Returns the hash of the broadcast transaction.
    """
    raw = getattr(signed_tx, "raw_transaction", None) or getattr(signed_tx, "rawTransaction", None)
    if raw is None:
        raise TransitionRejected("Signed transaction object does not contain raw tx bytes")

    return w3.eth.send_raw_transaction(raw)


class Web3Ledger(Ledger):
    """
    Adapter for the deployed CertificateRegistry contract.

    The contract enforces the state machine; this class only signs, sends,
    waits for the receipt and translates reverts and logs.
    """

    def __init__(self, w3, contract, private_key: str, gas_limit: int = 300000, receipt_timeout: int = 120):
        self.w3 = w3
        self.contract = contract
        self.private_key = normalize_private_key(private_key)
        self.account = w3.eth.account.from_key(self.private_key)
        self.gas_limit = gas_limit
        self.receipt_timeout = receipt_timeout
        self.selectors = error_selectors(contract.abi)
        # one in-flight nonce allocation at a time for this key
        self._send_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "Web3Ledger":
        if not settings.CONTRACT_ADDRESS or not settings.ADMIN_PK:
            raise ValueError("CONTRACT_ADDRESS and ADMIN_PK must be set for the web3 ledger")
        w3 = Web3(Web3.HTTPProvider(settings.RPC_URL))
        contract = w3.eth.contract(address=Web3.to_checksum_address(settings.CONTRACT_ADDRESS), abi=load_abi())
        return cls(
            w3,
            contract,
            settings.ADMIN_PK,
            gas_limit=settings.TX_GAS_LIMIT,
            receipt_timeout=settings.TX_RECEIPT_TIMEOUT,
        )

    # ---------- writes ----------
    def _require_sender(self, caller: str):
        # the chain only knows the key we sign with
        if not caller or caller.lower() != self.account.address.lower():
            raise Unauthorized(f"{caller or '<anonymous>'} cannot sign with the configured ledger key")

    def _broadcast(self, fn, action: str):
        sender = self.account.address
        try:
            # dry run first so reverts surface before paying for gas
            fn.call({"from": sender})
            with self._send_lock:
                tx = fn.build_transaction({
                    "from": sender,
                    "nonce": self.w3.eth.get_transaction_count(sender, "pending"),
                    "gas": self.gas_limit,
                    "gasPrice": self.w3.eth.gas_price,
                    "chainId": self.w3.eth.chain_id,
                })
                signed = self.w3.eth.account.sign_transaction(tx, private_key=self.private_key)
                return _send_signed_transaction(self.w3, signed)
        except ContractLogicError as e:
            raise decode_revert(e, self.selectors) from e
        except (Web3Exception, ValueError, OSError) as e:
            log.exception("%s submission failed", action)
            raise TransitionRejected(f"{action} failed: {e}") from e

    def _transact(self, fn, action: str) -> TransactionReceipt:
        sent = self._broadcast(fn, action)
        tx_hash = Web3.to_hex(sent)
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(sent, timeout=self.receipt_timeout)
        except TimeExhausted:
            # broadcast but not mined yet: outcome unknown, caller must re-query before retrying
            log.warning("%s not confirmed after %ss: %s", action, self.receipt_timeout, tx_hash)
            return TransactionReceipt(tx_hash=tx_hash, status=Finality.PENDING)
        except (Web3Exception, ValueError, OSError):
            log.exception("%s sent as %s but receipt lookup failed", action, tx_hash)
            return TransactionReceipt(tx_hash=tx_hash, status=Finality.PENDING)

        if receipt["status"] != 1:
            log.warning("%s reverted on chain: %s", action, tx_hash)
            raise TransitionRejected(f"{action} reverted in block {receipt['blockNumber']} ({tx_hash})")

        events: List[Notification] = [
            _issued_from_log(e)
            for e in self.contract.events.CertificateIssued().process_receipt(receipt, errors=DISCARD)
        ]
        events += [
            _updated_from_log(e)
            for e in self.contract.events.StatusUpdated().process_receipt(receipt, errors=DISCARD)
        ]
        return TransactionReceipt(
            tx_hash=tx_hash,
            block_number=int(receipt["blockNumber"]),
            gas_used=int(receipt["gasUsed"]),
            status=Finality.CONFIRMED,
            events=events,
        )

    def submit_issue(self, fingerprint, label, caller) -> TransactionReceipt:
        self._require_sender(caller)
        fn = self.contract.functions.issueCertificate(HexBytes(to_fingerprint(fingerprint)), label)
        return self._transact(fn, "issueCertificate")

    def submit_status_change(self, fingerprint, new_status, reason, caller) -> TransactionReceipt:
        self._require_sender(caller)
        fn = self.contract.functions.updateStatus(
            HexBytes(to_fingerprint(fingerprint)), int(new_status), reason or ""
        )
        return self._transact(fn, "updateStatus")

    # ---------- reads ----------
    def _read(self, fn):
        try:
            return fn.call()
        except ContractLogicError as e:
            raise decode_revert(e, self.selectors) from e
        except (Web3Exception, ValueError, OSError) as e:
            raise TransitionRejected(f"ledger read failed: {e}") from e

    def get_certificate(self, fingerprint) -> CertificateRecord:
        fp = to_fingerprint(fingerprint, allow_zero=True)
        exists, label, issued_at, issuer, status = self._read(
            self.contract.functions.getCertificate(HexBytes(fp))
        )
        if not exists:
            return CertificateRecord.absent(fp)
        return CertificateRecord(
            fingerprint=fp,
            exists=True,
            label=label,
            issued_at=int(issued_at),
            issuer=Web3.to_checksum_address(issuer) if issuer else ZERO_ADDRESS,
            status=CertStatus(status),
        )

    def is_valid(self, fingerprint) -> bool:
        fp = to_fingerprint(fingerprint, allow_zero=True)
        return bool(self._read(self.contract.functions.isValid(HexBytes(fp))))

    def get_history(self, fingerprint) -> List[StatusHistoryEntry]:
        fp = to_fingerprint(fingerprint, allow_zero=True)
        rows = self._read(self.contract.functions.getHistory(HexBytes(fp)))
        return [
            StatusHistoryEntry(
                status=CertStatus(status),
                changed_at=int(changed_at),
                changed_by=Web3.to_checksum_address(changed_by),
                reason=reason,
            )
            for status, changed_at, changed_by, reason in rows
        ]

    def get_history_count(self, fingerprint) -> int:
        fp = to_fingerprint(fingerprint, allow_zero=True)
        return int(self._read(self.contract.functions.getHistoryCount(HexBytes(fp))))

    # ---------- event replay ----------
    def latest_block(self) -> int:
        return int(self.w3.eth.block_number)

    def events_since(self, from_block: int, to_block: Optional[int] = None) -> List[Notification]:
        """Decoded registry notifications in [from_block, to_block], in chain order."""
        to_block = self.latest_block() if to_block is None else to_block
        if from_block > to_block:
            return []
        try:
            logs = list(self.contract.events.CertificateIssued().get_logs(from_block=from_block, to_block=to_block))
            logs += list(self.contract.events.StatusUpdated().get_logs(from_block=from_block, to_block=to_block))
        except (Web3Exception, ValueError, OSError) as e:
            raise TransitionRejected(f"event query failed: {e}") from e

        logs.sort(key=lambda e: (e["blockNumber"], e["logIndex"]))
        return [
            _issued_from_log(e) if e["event"] == "CertificateIssued" else _updated_from_log(e)
            for e in logs
        ]
