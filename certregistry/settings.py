# certregistry/settings.py
from eth_account import Account
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal, Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    LEDGER_BACKEND: Literal["sql", "web3"] = "sql"
    DATABASE_URL: str = "sqlite:///./certregistry.db"

    RPC_URL: str = "http://127.0.0.1:8545"
    CONTRACT_ADDRESS: Optional[str] = None
    CHAIN_ID: int = 31337
    ADMIN_PK: Optional[str] = None
    AUTHORITY_ADDRESS: Optional[str] = None
    TX_GAS_LIMIT: int = 300000
    TX_RECEIPT_TIMEOUT: int = 120

    EVENT_SYNC_SECONDS: int = 30
    EVENT_SYNC_FROM_BLOCK: int = 0

    HOST: str = "127.0.0.1"
    PORT: int = 8000

    def admin_address(self) -> Optional[str]:
        if not self.ADMIN_PK:
            return None
        return Account.from_key(normalize_private_key(self.ADMIN_PK)).address

    def authority_address(self) -> Optional[str]:
        return self.AUTHORITY_ADDRESS or self.admin_address()


def normalize_private_key(pk: str) -> str:
    pk = pk.strip()
    if not pk.startswith("0x"):
        pk = "0x" + pk
    if len(pk) != 66:
        raise ValueError(f"Invalid private key length: {len(pk)}")
    return pk


settings = Settings()
