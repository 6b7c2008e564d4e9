"""Shared fixtures: a fresh in-memory ledger per test and a deterministic clock."""
import os

# must be set before certregistry.settings is imported
os.environ["LEDGER_BACKEND"] = "sql"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ADMIN_PK"] = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
os.environ.pop("AUTHORITY_ADDRESS", None)
os.environ.pop("CONTRACT_ADDRESS", None)

import pytest
from eth_account import Account
from web3 import Web3

from certregistry.crud import init_db, make_engine, record_event
from certregistry.engine import RegistryEngine
from certregistry.events import Notifier
from certregistry.ledger import SqlLedger
from certregistry.registry import SingleAuthority

ADMIN_PK = os.environ["ADMIN_PK"]
OTHER_PK = "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"

ADMIN = Account.from_key(ADMIN_PK).address
OTHER = Account.from_key(OTHER_PK).address

HASH_A = bytes(Web3.keccak(text="certificate_a.pdf_content"))
HASH_B = bytes(Web3.keccak(text="certificate_b.pdf_content"))
HEX_A = "0x" + HASH_A.hex()
HEX_B = "0x" + HASH_B.hex()
ZERO_HEX = "0x" + "00" * 32

LABEL_A = "Bachelor of Informatics Graduation Certificate 2025"
LABEL_B = "National Blockchain Seminar Participant 2025"


class FakeClock:
    """Ledger time that advances one second per reading."""

    def __init__(self, start: int = 1_700_000_000):
        self.now = start

    def __call__(self) -> int:
        self.now += 1
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db():
    bind = make_engine("sqlite://")
    init_db(bind)
    yield bind
    bind.dispose()


@pytest.fixture
def policy():
    return SingleAuthority(ADMIN)


@pytest.fixture
def ledger(db, policy, clock):
    return SqlLedger(db, policy, clock=clock)


@pytest.fixture
def notifications():
    return []


@pytest.fixture
def engine(ledger, policy, db, notifications):
    notifier = Notifier()
    notifier.subscribe(notifications.append)
    notifier.subscribe(lambda event: record_event(event, bind=db))
    return RegistryEngine(ledger, notifier, policy, index_bind=db)
