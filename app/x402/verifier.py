# app/x402/verifier.py
"""
x402 payment challenge construction and verification.

``PaymentVerifier.verify`` walks an X-PAYMENT header through a fixed
sequence of checks and stops at the first failure, returning a distinct
reason code for each:

1. header decodes as base64 JSON, ``x402Version`` is supported
2. scheme and network match what this gateway advertises
3. all authorization fields are present and well formed
4. payee is the configured receiving address
5. value covers the advertised price
6. now lies inside [validAfter, validBefore]
7. nonce has not been used locally, and is not in flight on another request
8. token-side ``authorizationState`` does not report the nonce as used
9. settlement via ``transferWithAuthorization``, or signature-only
   verification when settlement is unavailable and explicitly allowed

On success the nonce is persisted before the result is returned.
"""
import json
import logging
import threading
import time
from binascii import Error as BinasciiError
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set

from eth_utils import is_address, to_checksum_address
from pydantic import ValidationError
from x402.encoding import safe_base64_decode

from app.core.config import settings
from app.x402.eip3009 import is_valid_signature
from app.x402.ledger import (
    LedgerClient,
    LedgerUnavailableError,
    SettlementRevertedError,
    Supported,
    Unsupported,
    create_ledger_client,
)
from app.x402.nonce_store import NonceStore, get_nonce_store, normalize_nonce
from app.x402.types import (
    AuthorizationPayload,
    EIP712Domain,
    PaymentExtra,
    PaymentRequirements,
    SCHEME_EIP3009,
    X402_VERSION,
)

logger = logging.getLogger(__name__)

# Rejection reason codes
ERR_INVALID_PAYMENT_HEADER = "invalid_payment_header"
ERR_UNSUPPORTED_VERSION = "unsupported_x402_version"
ERR_UNSUPPORTED_SCHEME = "unsupported_scheme"
ERR_NETWORK_MISMATCH = "network_mismatch"
ERR_MISSING_FIELDS = "missing_payload_fields"
ERR_INVALID_PAYLOAD = "invalid_payload"
ERR_RECIPIENT_MISMATCH = "recipient_mismatch"
ERR_INSUFFICIENT_AMOUNT = "insufficient_amount"
ERR_NOT_YET_VALID = "authorization_not_yet_valid"
ERR_EXPIRED = "authorization_expired"
ERR_NONCE_ALREADY_USED = "nonce_already_used"
ERR_NONCE_USED_ON_CHAIN = "nonce_used_on_chain"
ERR_INVALID_SIGNATURE = "invalid_signature"
ERR_SETTLEMENT_FAILED = "settlement_failed"

MODE_SETTLED = "settled"
MODE_SIGNATURE_ONLY = "signature_only"

REQUIRED_PAYLOAD_FIELDS = ("from", "to", "value", "validAfter", "validBefore", "nonce", "v", "r", "s")


class PaymentConfigurationError(Exception):
    """The gateway cannot verify payments with its current configuration."""


@dataclass
class VerificationResult:
    """Outcome of verifying one X-PAYMENT header."""
    is_valid: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    payer: Optional[str] = None
    amount: Optional[str] = None
    nonce: Optional[str] = None
    mode: Optional[str] = None
    transaction: Optional[str] = None
    fallback_reason: Optional[str] = None
    status_code: int = 402


def _reject(reason: str, message: str, status_code: int = 402, **kwargs) -> VerificationResult:
    return VerificationResult(
        is_valid=False, reason=reason, message=message, status_code=status_code, **kwargs
    )


def decode_payment_header(header_value: str) -> Dict[str, Any]:
    """
    Decode the X-PAYMENT header into a dict.

    Raises:
        ValueError: If the header is not base64-encoded JSON object
    """
    try:
        decoded = safe_base64_decode(header_value.strip())
        data = json.loads(decoded)
    except (BinasciiError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"expected base64 JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("expected a JSON object")
    return data


class PaymentVerifier:
    """
    Issues payment requirements and verifies X-PAYMENT headers against them.

    Holds no per-request state other than the set of nonces currently being
    verified, which closes the window between the local nonce check and the
    nonce being recorded.
    """

    def __init__(
        self,
        pay_to: str,
        network: str,
        asset: str,
        chain_id: int,
        price_amount: int,
        nonce_store: NonceStore,
        ledger: Optional[LedgerClient] = None,
        token_name: str = "USD Coin",
        token_version: str = "1",
        token_decimals: int = 6,
        max_timeout_seconds: int = 300,
        grace_seconds: int = 60,
        allow_signature_only: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        if not pay_to or not is_address(pay_to):
            raise PaymentConfigurationError(f"Invalid pay_to address: {pay_to!r}")
        self.pay_to = to_checksum_address(pay_to)
        self.network = network
        self.asset = to_checksum_address(asset)
        self.chain_id = chain_id
        self.price_amount = int(price_amount)
        self.token_name = token_name
        self.token_version = token_version
        self.token_decimals = token_decimals
        self.max_timeout_seconds = max_timeout_seconds
        self.grace_seconds = grace_seconds
        self.nonce_store = nonce_store
        self.ledger = ledger
        self.allow_signature_only = allow_signature_only
        self._clock = clock

        self._inflight: Set[str] = set()
        self._inflight_lock = threading.Lock()

    @property
    def domain(self) -> EIP712Domain:
        """The EIP-712 domain advertised to clients and used for recovery."""
        return EIP712Domain(
            name=self.token_name,
            version=self.token_version,
            chain_id=self.chain_id,
            verifying_contract=self.asset,
        )

    def _now(self) -> int:
        return int(self._clock())

    def build_requirements(self, resource: str, description: str = "") -> PaymentRequirements:
        """Build a fresh PaymentRequirements for ``resource``."""
        now = self._now()
        return PaymentRequirements(
            scheme=SCHEME_EIP3009,
            network=self.network,
            max_amount_required=str(self.price_amount),
            resource=resource,
            description=description,
            mime_type="application/json",
            pay_to=self.pay_to,
            max_timeout_seconds=self.max_timeout_seconds,
            asset=self.asset,
            extra=PaymentExtra(
                decimals=self.token_decimals,
                valid_after=now - self.grace_seconds,
                valid_before=now + self.max_timeout_seconds,
                eip712_domain=self.domain,
            ),
        )

    # --- Nonce reservation ---

    def _claim_nonce(self, nonce: str) -> bool:
        """Atomically check the nonce is unused and mark it in flight."""
        key = normalize_nonce(nonce)
        with self._inflight_lock:
            if key in self._inflight or self.nonce_store.has(key):
                return False
            self._inflight.add(key)
            return True

    def _release_nonce(self, nonce: str) -> None:
        with self._inflight_lock:
            self._inflight.discard(normalize_nonce(nonce))

    # --- Verification ---

    def verify(self, header_value: str, requirements: PaymentRequirements) -> VerificationResult:
        """
        Verify an X-PAYMENT header against ``requirements``.

        Client mistakes come back as a rejected VerificationResult.

        Raises:
            LedgerUnavailableError: Ledger unreachable and signature-only
                verification is not allowed
            PaymentConfigurationError: No way to settle or verify a payment
            NonceStoreError: The used nonce could not be persisted
        """
        try:
            data = decode_payment_header(header_value)
        except ValueError as e:
            return _reject(ERR_INVALID_PAYMENT_HEADER, f"Malformed X-PAYMENT header ({e})")

        version = data.get("x402Version")
        # JSON true and 1.0 compare equal to 1 in Python
        if isinstance(version, bool) or not isinstance(version, int) or version != X402_VERSION:
            return _reject(
                ERR_UNSUPPORTED_VERSION,
                f"Unsupported x402Version: {version!r} (expected {X402_VERSION})",
                status_code=400,
            )

        scheme = data.get("scheme")
        if scheme != requirements.scheme:
            return _reject(ERR_UNSUPPORTED_SCHEME, f"Unsupported scheme: {scheme}")
        network = data.get("network")
        if network != requirements.network:
            return _reject(
                ERR_NETWORK_MISMATCH,
                f"Wrong network: expected {requirements.network}, got {network}",
            )

        payload = data.get("payload")
        if not isinstance(payload, dict):
            return _reject(ERR_MISSING_FIELDS, "Missing EIP-3009 payload")
        missing = [f for f in REQUIRED_PAYLOAD_FIELDS if payload.get(f) in (None, "")]
        if missing:
            return _reject(ERR_MISSING_FIELDS, f"Missing EIP-3009 payload fields: {', '.join(missing)}")

        try:
            auth = AuthorizationPayload.model_validate(payload)
        except ValidationError as e:
            return _reject(ERR_INVALID_PAYLOAD, f"Invalid EIP-3009 payload: {e.error_count()} field error(s)")

        details = {"payer": auth.from_, "amount": auth.value, "nonce": auth.nonce}

        if auth.to.lower() != requirements.pay_to.lower():
            return _reject(
                ERR_RECIPIENT_MISMATCH,
                f"Payment must go to {requirements.pay_to}",
                **details,
            )

        required = int(requirements.max_amount_required)
        if int(auth.value) < required:
            return _reject(
                ERR_INSUFFICIENT_AMOUNT,
                f"Insufficient payment: need {required}, got {auth.value}",
                **details,
            )

        now = self._now()
        if now < int(auth.valid_after):
            return _reject(ERR_NOT_YET_VALID, "Payment authorization not yet valid", **details)
        if now > int(auth.valid_before):
            return _reject(ERR_EXPIRED, "Payment authorization expired", **details)

        if not self._claim_nonce(auth.nonce):
            return _reject(ERR_NONCE_ALREADY_USED, "Payment nonce already used (replay)", **details)

        try:
            result = self._settle_or_verify(auth, network)
            if result.is_valid and not self.nonce_store.add_if_absent(auth.nonce):
                return _reject(ERR_NONCE_ALREADY_USED, "Payment nonce already used (replay)", **details)
        finally:
            self._release_nonce(auth.nonce)

        result.payer = auth.from_
        result.amount = auth.value
        result.nonce = auth.nonce
        return result

    def _settle_or_verify(self, auth: AuthorizationPayload, network: str) -> VerificationResult:
        ledger_error: Optional[LedgerUnavailableError] = None
        # Set when the fallback is caused by an outage rather than a missing capability
        outage: Optional[LedgerUnavailableError] = None

        if self.ledger is None:
            fallback_reason = "no ledger configured"
        else:
            try:
                state = self.ledger.authorization_state(auth.from_, auth.nonce)
            except LedgerUnavailableError as e:
                logger.warning(f"x402: authorizationState check failed, continuing: {e}")
                ledger_error = e
                state = None

            if isinstance(state, Supported) and state.value:
                return _reject(ERR_NONCE_USED_ON_CHAIN, "EIP-3009 nonce already used on-chain")
            if isinstance(state, Unsupported):
                logger.info(f"x402: {state.reason}, relying on signature verification")

            if self.ledger.can_settle:
                if not is_valid_signature(self.domain, auth):
                    return _reject(ERR_INVALID_SIGNATURE, "EIP-3009 signature invalid")
                try:
                    outcome = self.ledger.transfer_with_authorization(auth)
                except SettlementRevertedError as e:
                    logger.warning(f"x402: Settlement reverted for {auth.from_}: {e}")
                    return _reject(ERR_SETTLEMENT_FAILED, f"Settlement failed: {e}")
                except LedgerUnavailableError as e:
                    logger.warning(f"x402: Settlement unavailable: {e}")
                    outage = e
                    fallback_reason = str(e)
                else:
                    if isinstance(outcome, Supported):
                        logger.info(f"x402: Payment settled on-chain ({network}): {outcome.value}")
                        return VerificationResult(
                            is_valid=True, mode=MODE_SETTLED, transaction=outcome.value
                        )
                    fallback_reason = outcome.reason
            else:
                outage = ledger_error
                fallback_reason = str(ledger_error) if ledger_error else "no settlement key configured"

        if not self.allow_signature_only:
            if outage is not None:
                raise outage
            raise PaymentConfigurationError(
                f"Cannot settle payment ({fallback_reason}) and signature-only verification is disabled"
            )

        if not is_valid_signature(self.domain, auth):
            return _reject(ERR_INVALID_SIGNATURE, "EIP-3009 signature invalid")

        logger.warning(
            f"x402: Payment from {auth.from_} accepted by SIGNATURE ONLY, no funds moved "
            f"({fallback_reason})"
        )
        return VerificationResult(
            is_valid=True, mode=MODE_SIGNATURE_ONLY, fallback_reason=fallback_reason
        )


# Global verifier instance
_verifier: Optional[PaymentVerifier] = None
_verifier_lock = threading.Lock()


def create_payment_verifier() -> PaymentVerifier:
    """Build a PaymentVerifier from X402_* settings."""
    if not settings.X402_PAY_TO_ADDRESS:
        raise PaymentConfigurationError(
            "X402_PAY_TO_ADDRESS is required (address that receives credit-check fees)"
        )
    if settings.X402_ALLOW_SIGNATURE_ONLY:
        logger.warning(
            "x402: X402_ALLOW_SIGNATURE_ONLY is enabled; payments that cannot be "
            "settled on-chain will be accepted without moving funds"
        )
    return PaymentVerifier(
        pay_to=settings.X402_PAY_TO_ADDRESS,
        network=settings.X402_NETWORK,
        asset=settings.X402_ASSET_ADDRESS,
        chain_id=settings.X402_CHAIN_ID,
        price_amount=settings.X402_PRICE_AMOUNT,
        nonce_store=get_nonce_store(),
        ledger=create_ledger_client(),
        token_name=settings.X402_TOKEN_NAME,
        token_version=settings.X402_TOKEN_VERSION,
        token_decimals=settings.X402_TOKEN_DECIMALS,
        max_timeout_seconds=settings.X402_MAX_TIMEOUT_SECONDS,
        grace_seconds=settings.X402_VALIDITY_GRACE_SECONDS,
        allow_signature_only=settings.X402_ALLOW_SIGNATURE_ONLY,
    )


def get_payment_verifier() -> PaymentVerifier:
    """Get the global PaymentVerifier, creating it on first use."""
    global _verifier

    if _verifier is None:
        with _verifier_lock:
            if _verifier is None:
                _verifier = create_payment_verifier()

    return _verifier


def reset_payment_verifier() -> None:
    """Drop the global verifier (useful for testing)."""
    global _verifier
    with _verifier_lock:
        _verifier = None
