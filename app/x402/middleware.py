# app/x402/middleware.py
"""
FastAPI middleware for x402 payment verification.

This module provides HTTP middleware that:
1. Intercepts requests for credit assessments (GET /credit/<address>)
2. Checks if payment is required (X402_ENABLED)
3. Returns 402 Payment Required with fresh requirements when no X-PAYMENT
   header is sent
4. Verifies and settles the X-PAYMENT header through PaymentVerifier
5. Adds an X-PAYMENT-RESPONSE header to the paid response

Every step is recorded in the x402 audit log.
"""
import json
import logging
import re
from typing import Callable, Optional

from eth_utils import is_address
from fastapi import Request, Response
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from x402.encoding import safe_base64_encode

from app.core.config import settings
from app.x402 import audit
from app.x402.ledger import LedgerUnavailableError
from app.x402.nonce_store import NonceStoreError
from app.x402.types import (
    PaymentRejection,
    PaymentRequiredResponse,
    PaymentRequirements,
    SettlementInfo,
    X402_VERSION,
)
from app.x402.verifier import (
    PaymentConfigurationError,
    PaymentVerifier,
    VerificationResult,
    get_payment_verifier,
)

logger = logging.getLogger(__name__)

# x402 protocol constants
X_PAYMENT_HEADER = "X-PAYMENT"
X_PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"
X402_VERSION_HEADER = "X-402-Version"

ERR_SETTLEMENT_UNAVAILABLE = "settlement_unavailable"
ERR_PAYMENT_MISCONFIGURED = "payment_misconfigured"
ERR_NONCE_STORE_UNAVAILABLE = "nonce_store_unavailable"

# 500 reason per failing stage
SERVER_ERROR_REASONS = {
    "configuration": ERR_PAYMENT_MISCONFIGURED,
    "settlement": ERR_SETTLEMENT_UNAVAILABLE,
    "nonce_store": ERR_NONCE_STORE_UNAVAILABLE,
}

CREDIT_PATH_PATTERN = re.compile(r"^/credit/(?P<subject>[^/]+)/?$")


def get_protected_subject(method: str, path: str) -> Optional[str]:
    """
    Return the agent address if the request is a gated credit lookup.

    Malformed addresses are not gated; the endpoint answers them with 400.
    """
    if method != "GET":
        return None
    match = CREDIT_PATH_PATTERN.match(path)
    if not match:
        return None
    subject = match.group("subject")
    return subject if is_address(subject) else None


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    # Check for forwarded headers first
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    # Fall back to direct connection
    if request.client:
        return request.client.host

    return "unknown"


def create_402_response(
    payment_requirements: PaymentRequirements,
    error_message: str = "Payment required"
) -> JSONResponse:
    """
    Create an HTTP 402 Payment Required challenge.

    Args:
        payment_requirements: The payment requirements to include
        error_message: Error message for the response

    Returns:
        JSONResponse with 402 status and payment details
    """
    body = PaymentRequiredResponse(
        x402_version=X402_VERSION,
        error=error_message,
        accepts=[payment_requirements],
    )
    return JSONResponse(
        status_code=402,
        content=body.model_dump(by_alias=True, exclude_none=True),
        headers={X402_VERSION_HEADER: str(X402_VERSION)}
    )


def create_rejection_response(
    result: VerificationResult,
    payment_requirements: PaymentRequirements
) -> JSONResponse:
    """
    Create the response for a rejected payment.

    The rejection carries fresh requirements so the client can pay again.
    """
    body = PaymentRejection(
        error=result.message or "Payment verification failed",
        reason=result.reason or "invalid_payment",
        x402=payment_requirements,
    )
    return JSONResponse(
        status_code=result.status_code,
        content=body.model_dump(by_alias=True, exclude_none=True),
        headers={X402_VERSION_HEADER: str(X402_VERSION)}
    )


def encode_payment_response(settlement: SettlementInfo) -> str:
    """
    Encode a settlement summary for the X-PAYMENT-RESPONSE header.

    Returns:
        Base64-encoded JSON string
    """
    response_json = json.dumps(settlement.model_dump(by_alias=True))
    return safe_base64_encode(response_json.encode("utf-8"))


class X402Middleware(BaseHTTPMiddleware):
    """
    x402 payment verification middleware for FastAPI.

    When X402_ENABLED=true, this middleware:
    - Checks if the request is a gated credit lookup
    - Returns HTTP 402 with payment requirements if no payment is attached
    - Verifies the payment, settling it on-chain where possible
    - Returns HTTP 402 with a reason code if the payment is rejected

    When X402_ENABLED=false, all requests pass through unchanged.
    """

    def __init__(self, app, verifier: Optional[PaymentVerifier] = None):
        super().__init__(app)
        self._verifier = verifier

    @property
    def verifier(self) -> PaymentVerifier:
        """Lazy initialization of the payment verifier."""
        if self._verifier is None:
            self._verifier = get_payment_verifier()
        return self._verifier

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Response]
    ) -> Response:
        """
        Process the request through x402 payment verification.

        Flow:
        1. Check if x402 is enabled
        2. Check if the request is a gated credit lookup
        3. If no X-PAYMENT header, return 402 with payment requirements
        4. If X-PAYMENT header present, verify (and settle) it
        5. If valid, process the request
        6. Add X-PAYMENT-RESPONSE header to successful response
        """
        # Skip if x402 is disabled
        if not settings.X402_ENABLED:
            return await call_next(request)

        subject = get_protected_subject(request.method, request.url.path)
        if subject is None:
            return await call_next(request)

        client_ip = get_client_ip(request)
        resource = request.url.path
        payment_header = request.headers.get(X_PAYMENT_HEADER)
        request_id = audit.log_request_received(
            client_ip=client_ip,
            method=request.method,
            path=resource,
            has_payment=bool(payment_header),
        )
        logger.info(f"x402: Processing credit request from {client_ip}: {request.method} {resource}")

        try:
            verifier = self.verifier
        except PaymentConfigurationError as e:
            return self._server_error(client_ip, request_id, e, "configuration")

        payment_requirements = verifier.build_requirements(
            resource=resource,
            description=f"Credit assessment for {subject}"
        )

        if not payment_header:
            logger.info(f"x402: No X-PAYMENT header, returning 402 for {payment_requirements.max_amount_required}")
            audit.log_payment_required_sent(
                client_ip=client_ip,
                amount=payment_requirements.max_amount_required,
                network=payment_requirements.network,
                pay_to=payment_requirements.pay_to,
                resource=resource,
                request_id=request_id,
            )
            return create_402_response(
                payment_requirements=payment_requirements,
                error_message="X-PAYMENT header is required"
            )

        try:
            result = await run_in_threadpool(verifier.verify, payment_header, payment_requirements)
        except (LedgerUnavailableError, PaymentConfigurationError) as e:
            return self._server_error(client_ip, request_id, e, "settlement")
        except NonceStoreError as e:
            return self._server_error(client_ip, request_id, e, "nonce_store")

        if not result.is_valid:
            logger.warning(f"x402: Payment rejected from {client_ip}: {result.reason} ({result.message})")
            audit.log_payment_failed(
                client_ip=client_ip,
                reason=result.reason,
                stage="verify",
                wallet_address=result.payer,
                request_id=request_id,
            )
            audit.log_payment_required_sent(
                client_ip=client_ip,
                amount=payment_requirements.max_amount_required,
                network=payment_requirements.network,
                pay_to=payment_requirements.pay_to,
                resource=resource,
                reason=result.reason,
                request_id=request_id,
            )
            return create_rejection_response(result, payment_requirements)

        audit.log_payment_received(
            client_ip=client_ip,
            payer=result.payer,
            amount=result.amount,
            nonce=result.nonce,
            network=payment_requirements.network,
            request_id=request_id,
        )
        if result.transaction:
            audit.log_payment_settled(
                client_ip=client_ip,
                payer=result.payer,
                amount=result.amount,
                transaction_hash=result.transaction,
                network=payment_requirements.network,
                request_id=request_id,
            )
        else:
            audit.log_payment_verified_signature_only(
                client_ip=client_ip,
                payer=result.payer,
                amount=result.amount,
                network=payment_requirements.network,
                fallback_reason=result.fallback_reason or "",
                request_id=request_id,
            )
        logger.info(f"x402: Payment accepted from {result.payer} ({result.mode})")

        # Process the request
        response = await call_next(request)

        audit.log_resource_served(
            client_ip=client_ip,
            resource=resource,
            status_code=response.status_code,
            wallet_address=result.payer,
            request_id=request_id,
        )

        settlement = SettlementInfo(
            success=True,
            mode=result.mode,
            transaction=result.transaction,
            network=payment_requirements.network,
            payer=result.payer,
        )

        # Create new response with header added
        body = b""
        async for chunk in response.body_iterator:
            body += chunk

        new_response = Response(
            content=body,
            status_code=response.status_code,
            headers=dict(response.headers),
            media_type=response.media_type
        )
        new_response.headers[X_PAYMENT_RESPONSE_HEADER] = encode_payment_response(settlement)

        return new_response

    def _server_error(
        self,
        client_ip: str,
        request_id: Optional[str],
        error: Exception,
        stage: str
    ) -> JSONResponse:
        logger.error(f"x402: Cannot process payment ({stage}): {error}")
        audit.log_error(
            client_ip=client_ip,
            error_type=type(error).__name__,
            error_message=str(error),
            context={"stage": stage},
            request_id=request_id,
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "Payment processing unavailable",
                "reason": SERVER_ERROR_REASONS[stage],
            }
        )
