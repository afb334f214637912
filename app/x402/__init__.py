# app/x402/__init__.py
"""
x402 Payment Protocol Module.

Implements pay-per-request access to credit assessments using HTTP 402
challenges answered with EIP-3009 transferWithAuthorization signatures.

Key components:
- middleware: FastAPI middleware that issues challenges and gates requests
- verifier: Payment verification pipeline and settlement fallback
- ledger: web3 access to the token's EIP-3009 functions
- nonce_store: Durable record of consumed authorization nonces
- eip3009: EIP-712 typed-data signing and signer recovery
- client: requests-based client that pays challenges automatically
- audit: Transaction audit logging

Configuration is loaded from environment variables via app.core.config.
"""

__version__ = "0.1.0"
