"""Web3 adapter: revert translation, receipt handling and event decoding, against a mocked node."""
from unittest.mock import MagicMock

import pytest
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractCustomError, ContractLogicError, TimeExhausted

from certregistry.blockchain import Web3Ledger, decode_revert, error_selectors, load_abi
from certregistry.engine import RegistryEngine
from certregistry.errors import (
    AlreadyExists,
    EmptyLabel,
    InvalidFingerprint,
    NotFound,
    StatusUnchanged,
    TransitionRejected,
    Unauthorized,
)
from certregistry.events import Notifier
from certregistry.ledger import Finality
from certregistry.registry import CertStatus, ZERO_ADDRESS
from tests.conftest import ADMIN, ADMIN_PK, HASH_A, LABEL_A, OTHER

TX_HASH = HexBytes(b"\x11" * 32)


def selector(signature):
    return Web3.to_hex(Web3.keccak(text=signature)[:4])


def issued_log(block=5, index=0, fingerprint=HASH_A, label=LABEL_A):
    return {
        "event": "CertificateIssued",
        "args": {"certHash": fingerprint, "label": label, "issuer": ADMIN.lower(), "issuedAt": 1_700_000_000},
        "transactionHash": TX_HASH,
        "blockNumber": block,
        "logIndex": index,
    }


def updated_log(block=6, index=0, old=0, new=1, reason="revoked"):
    return {
        "event": "StatusUpdated",
        "args": {
            "certHash": HASH_A,
            "oldStatus": old,
            "newStatus": new,
            "changedBy": ADMIN,
            "reason": reason,
            "changedAt": 1_700_000_100,
        },
        "transactionHash": HexBytes(b"\x22" * 32),
        "blockNumber": block,
        "logIndex": index,
    }


@pytest.fixture
def abi():
    return load_abi()


@pytest.fixture
def node(abi):
    w3 = MagicMock()
    account = MagicMock()
    account.address = ADMIN
    w3.eth.account.from_key.return_value = account
    w3.eth.get_transaction_count.return_value = 3
    w3.eth.gas_price = 1_000_000_000
    w3.eth.chain_id = 31337
    w3.eth.block_number = 9
    w3.eth.account.sign_transaction.return_value = MagicMock(raw_transaction=b"signed")
    w3.eth.send_raw_transaction.return_value = TX_HASH
    w3.eth.wait_for_transaction_receipt.return_value = {
        "transactionHash": TX_HASH,
        "status": 1,
        "blockNumber": 5,
        "gasUsed": 71234,
    }

    contract = MagicMock()
    contract.abi = abi
    contract.events.CertificateIssued.return_value.process_receipt.return_value = [issued_log()]
    contract.events.StatusUpdated.return_value.process_receipt.return_value = []
    return w3, contract


@pytest.fixture
def chain(node):
    w3, contract = node
    return Web3Ledger(w3, contract, ADMIN_PK[2:], gas_limit=250000)


class TestRevertDecoding:
    def test_selectors_cover_abi_errors(self, abi):
        selectors = error_selectors(abi)
        assert selectors[selector("InvalidHash()")] == "InvalidHash"
        assert selectors[selector("OwnableUnauthorizedAccount(address)")] == "OwnableUnauthorizedAccount"
        assert selectors[selector("CertificateAlreadyExists(bytes32)")] == "CertificateAlreadyExists"

    @pytest.mark.parametrize(
        "signature,expected",
        [
            ("InvalidHash()", InvalidFingerprint),
            ("LabelCannotBeEmpty()", EmptyLabel),
            ("CertificateAlreadyExists(bytes32)", AlreadyExists),
            ("CertificateNotFound(bytes32)", NotFound),
            ("StatusUnchanged(uint8)", StatusUnchanged),
            ("OwnableUnauthorizedAccount(address)", Unauthorized),
        ],
    )
    def test_custom_error_data(self, abi, signature, expected):
        exc = ContractCustomError("execution reverted", data=selector(signature) + "00" * 32)
        assert isinstance(decode_revert(exc, error_selectors(abi)), expected)

    def test_node_message_fallback(self, abi):
        exc = ContractLogicError("VM Exception: reverted with custom error 'CertificateNotFound(0xab..)'")
        assert isinstance(decode_revert(exc, error_selectors(abi)), NotFound)

    def test_unknown_revert(self, abi):
        exc = ContractLogicError("execution reverted: out of gas")
        assert isinstance(decode_revert(exc, error_selectors(abi)), TransitionRejected)


class TestWrites:
    def test_issue_sends_signed_transaction(self, node, chain):
        w3, contract = node
        receipt = chain.submit_issue(HASH_A, LABEL_A, ADMIN)

        contract.functions.issueCertificate.assert_called_once_with(HexBytes(HASH_A), LABEL_A)
        fn = contract.functions.issueCertificate.return_value
        fn.call.assert_called_once_with({"from": ADMIN})
        tx_params = fn.build_transaction.call_args[0][0]
        assert tx_params["gas"] == 250000
        assert tx_params["nonce"] == 3
        w3.eth.send_raw_transaction.assert_called_once_with(b"signed")

        assert receipt.status == Finality.CONFIRMED
        assert receipt.tx_hash == Web3.to_hex(TX_HASH)
        assert receipt.block_number == 5
        assert receipt.gas_used == 71234
        [event] = receipt.events
        assert event.name == "CertificateIssued"
        assert event.fingerprint == HASH_A
        assert event.issuer == ADMIN
        assert event.block_number == 5

    def test_status_change_decodes_event(self, node, chain):
        w3, contract = node
        contract.events.CertificateIssued.return_value.process_receipt.return_value = []
        contract.events.StatusUpdated.return_value.process_receipt.return_value = [updated_log()]

        receipt = chain.submit_status_change(HASH_A, CertStatus.REVOKED, "revoked", ADMIN)

        contract.functions.updateStatus.assert_called_once_with(HexBytes(HASH_A), 1, "revoked")
        [event] = receipt.events
        assert (event.previous_status, event.new_status, event.reason) == (CertStatus.ACTIVE, CertStatus.REVOKED, "revoked")

    def test_revert_in_dry_run_sends_nothing(self, node, chain):
        w3, contract = node
        fn = contract.functions.issueCertificate.return_value
        fn.call.side_effect = ContractCustomError("reverted", data=selector("CertificateAlreadyExists(bytes32)"))

        with pytest.raises(AlreadyExists):
            chain.submit_issue(HASH_A, LABEL_A, ADMIN)
        w3.eth.send_raw_transaction.assert_not_called()

    def test_failed_receipt(self, node, chain):
        w3, _ = node
        w3.eth.wait_for_transaction_receipt.return_value = {
            "transactionHash": TX_HASH, "status": 0, "blockNumber": 5, "gasUsed": 250000,
        }
        with pytest.raises(TransitionRejected):
            chain.submit_issue(HASH_A, LABEL_A, ADMIN)

    def test_rpc_failure(self, node, chain):
        w3, _ = node
        w3.eth.send_raw_transaction.side_effect = ConnectionError("connection refused")
        with pytest.raises(TransitionRejected):
            chain.submit_issue(HASH_A, LABEL_A, ADMIN)

    def test_foreign_caller(self, node, chain):
        w3, _ = node
        with pytest.raises(Unauthorized):
            chain.submit_issue(HASH_A, LABEL_A, OTHER)
        w3.eth.send_raw_transaction.assert_not_called()

    def test_zero_fingerprint_never_reaches_node(self, node, chain):
        _, contract = node
        with pytest.raises(InvalidFingerprint):
            chain.submit_issue(b"\x00" * 32, LABEL_A, ADMIN)
        contract.functions.issueCertificate.assert_not_called()

    def test_nonce_taken_from_pending_pool_under_lock(self, node, chain):
        w3, _ = node
        held = []
        w3.eth.send_raw_transaction.side_effect = lambda raw: held.append(chain._send_lock.locked()) or TX_HASH

        chain.submit_issue(HASH_A, LABEL_A, ADMIN)

        w3.eth.get_transaction_count.assert_called_once_with(ADMIN, "pending")
        assert held == [True]
        assert not chain._send_lock.locked()

    def test_receipt_wait_is_bounded(self, node, chain):
        w3, _ = node
        chain.submit_issue(HASH_A, LABEL_A, ADMIN)
        w3.eth.wait_for_transaction_receipt.assert_called_once_with(TX_HASH, timeout=chain.receipt_timeout)


class TestPendingConfirmation:
    @pytest.fixture
    def unmined(self, node):
        w3, contract = node
        w3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("not mined")
        contract.functions.getCertificate.return_value.call.return_value = (False, "", 0, ZERO_ADDRESS, 0)
        return node

    def test_timeout_returns_pending_receipt(self, unmined, chain):
        w3, _ = unmined
        receipt = chain.submit_issue(HASH_A, LABEL_A, ADMIN)

        w3.eth.send_raw_transaction.assert_called_once_with(b"signed")
        assert receipt.status == Finality.PENDING
        assert receipt.tx_hash == Web3.to_hex(TX_HASH)
        assert receipt.block_number is None
        assert receipt.events == []

    def test_receipt_lookup_failure_is_pending(self, node, chain):
        w3, _ = node
        w3.eth.wait_for_transaction_receipt.side_effect = ConnectionError("reset by peer")
        receipt = chain.submit_issue(HASH_A, LABEL_A, ADMIN)
        assert receipt.status == Finality.PENDING
        assert receipt.tx_hash == Web3.to_hex(TX_HASH)

    def test_engine_publishes_nothing_while_pending(self, unmined, chain):
        notifier = Notifier()
        seen = []
        notifier.subscribe(seen.append)
        engine = RegistryEngine(chain, notifier)

        receipt = engine.issue(HASH_A, LABEL_A, ADMIN)

        assert receipt.status == Finality.PENDING
        assert seen == []


class TestReads:
    def test_absent_certificate(self, node, chain):
        _, contract = node
        contract.functions.getCertificate.return_value.call.return_value = (False, "", 0, ZERO_ADDRESS, 0)
        record = chain.get_certificate(HASH_A)
        assert record.exists is False
        assert record.fingerprint == HASH_A

    def test_existing_certificate(self, node, chain):
        _, contract = node
        contract.functions.getCertificate.return_value.call.return_value = (True, LABEL_A, 1_700_000_000, ADMIN.lower(), 2)
        record = chain.get_certificate(HASH_A)
        assert record.exists is True
        assert record.issuer == ADMIN
        assert record.status == CertStatus.UPDATED

    def test_history(self, node, chain):
        _, contract = node
        contract.functions.getHistory.return_value.call.return_value = [
            (1, 100, ADMIN, "r1"),
            (0, 200, ADMIN, "r2"),
        ]
        contract.functions.getHistoryCount.return_value.call.return_value = 2
        history = chain.get_history(HASH_A)
        assert [h.status for h in history] == [CertStatus.REVOKED, CertStatus.ACTIVE]
        assert [h.reason for h in history] == ["r1", "r2"]
        assert chain.get_history_count(HASH_A) == 2

    def test_is_valid_uses_contract(self, node, chain):
        _, contract = node
        contract.functions.isValid.return_value.call.return_value = True
        assert chain.is_valid(HASH_A) is True
        contract.functions.isValid.assert_called_once_with(HexBytes(HASH_A))

    def test_read_failure(self, node, chain):
        _, contract = node
        contract.functions.getHistoryCount.return_value.call.side_effect = OSError("timeout")
        with pytest.raises(TransitionRejected):
            chain.get_history_count(HASH_A)


class TestEventReplay:
    def test_events_sorted_in_chain_order(self, node, chain):
        _, contract = node
        contract.events.CertificateIssued.return_value.get_logs.return_value = [issued_log(block=7, index=0), issued_log(block=3, index=1)]
        contract.events.StatusUpdated.return_value.get_logs.return_value = [updated_log(block=7, index=1), updated_log(block=3, index=0)]

        events = chain.events_since(0)
        assert [(e.block_number, e.name) for e in events] == [
            (3, "StatusUpdated"),
            (3, "CertificateIssued"),
            (7, "CertificateIssued"),
            (7, "StatusUpdated"),
        ]
        contract.events.CertificateIssued.return_value.get_logs.assert_called_once_with(from_block=0, to_block=9)

    def test_empty_range(self, chain):
        assert chain.events_since(10, to_block=9) == []
