# app/core/config.py
from typing import Optional
from pydantic_settings import BaseSettings
from functools import lru_cache
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

class Settings(BaseSettings):
    PROJECT_NAME: str = "x402 Credit Assessment Gateway"

    # --- x402 payment gate ---
    X402_ENABLED: bool = True
    X402_NETWORK: str = "arc-testnet"
    X402_CHAIN_ID: int = 5042002
    X402_RPC_URL: str = "https://arc-testnet.drpc.org"

    # Token the fee is paid in (must expose EIP-3009 for on-chain settlement)
    X402_ASSET_ADDRESS: str = "0xf2807051e292e945751a25616705a9aadfb39895"
    X402_TOKEN_NAME: str = "USD Coin"  # must match name() used in the token's EIP-712 domain
    X402_TOKEN_VERSION: str = "1"
    X402_TOKEN_DECIMALS: int = 6

    X402_PAY_TO_ADDRESS: Optional[str] = None  # required before payments can be verified
    X402_PRICE_AMOUNT: int = 1_000_000  # 1 USDC in base units
    X402_MAX_TIMEOUT_SECONDS: int = 300
    X402_VALIDITY_GRACE_SECONDS: int = 60  # clock skew tolerance for validAfter

    X402_NONCE_STORE_PATH: str = ".x402-nonces.json"
    X402_AUDIT_LOG_PATH: str = "logs/x402_audit.jsonl"

    # Settlement: with a key the server submits transferWithAuthorization itself
    X402_SETTLEMENT_PRIVATE_KEY: Optional[str] = None
    X402_LEDGER_TIMEOUT_SECONDS: int = 30
    # Accept signature-only verification when settlement is not possible.
    # Leave disabled in production: no funds move in this mode.
    X402_ALLOW_SIGNATURE_ONLY: bool = False

    # --- Credit data source ---
    REPUTATION_CONTRACT_ADDRESS: str = "0x94f2fa47c4488202a46daa9038ed9c9c4c07467f"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
