# app/x402/client.py
"""
HTTP client that pays x402 challenges automatically.

    client = X402Client(Account.from_key(key))
    assessment = client.get("http://localhost:8000/credit/0xABC...")

On a 402 the client signs an EIP-3009 TransferWithAuthorization for the
advertised amount and retries with an X-PAYMENT header, at most
``max_retries`` times.
"""
import json
import logging
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional

import requests
from x402.encoding import safe_base64_decode, safe_base64_encode

from app.x402.eip3009 import create_nonce, sign_authorization
from app.x402.errors import (
    PaymentRequirementsError,
    PaymentRetriesExceededError,
    UnsupportedNetworkError,
    UnsupportedSchemeError,
    X402HTTPError,
)
from app.x402.types import EIP712Domain, PaymentRequirements, SCHEME_EIP3009, X402_VERSION

logger = logging.getLogger(__name__)

X_PAYMENT_HEADER = "X-PAYMENT"
X_PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"

SUPPORTED_SCHEMES = (SCHEME_EIP3009,)

# Chain IDs used to build a domain when the server does not embed one
KNOWN_NETWORKS = {
    "arc-testnet": 5042002,
    "sepolia": 11155111,
    "base-sepolia": 84532,
    "arbitrum-sepolia": 421614,
    "optimism-sepolia": 11155420,
    "polygon-amoy": 80002,
    "mainnet": 1,
    "base": 8453,
}

DEFAULT_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "x402-credit-client/1.0",
}


def decode_x_payment_response(header: str) -> Dict[str, Any]:
    """Decode the X-PAYMENT-RESPONSE header.

    Returns:
        The decoded settlement summary containing success, mode,
        transaction, network and payer
    """
    return json.loads(safe_base64_decode(header))


def _response_body(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class X402Client:
    """Requests-based client that answers 402 challenges with EIP-3009 payments."""

    def __init__(
        self,
        account,
        max_retries: int = 2,
        domain_overrides: Optional[Dict[str, Dict[str, Any]]] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 30,
        networks: Optional[Dict[str, int]] = None,
    ):
        """Initialize the client.

        Args:
            account: eth_account LocalAccount holding the paying token balance
            max_retries: Paid retries allowed per request
            domain_overrides: EIP-712 domains keyed by token address, used when
                the server does not embed one
            session: requests.Session to send through
            timeout: Per-request timeout in seconds
            networks: Extra network name to chain ID entries
        """
        self.account = account
        self.max_retries = max_retries
        self.domain_overrides = {
            address.lower(): domain for address, domain in (domain_overrides or {}).items()
        }
        self.session = session or requests.Session()
        self.timeout = timeout
        self.networks = {**KNOWN_NETWORKS, **(networks or {})}

        # Base units signed away over the client's lifetime, whatever the server did with them
        self.total_spent = 0
        # Base units of payments the server answered with a non-error response
        self.total_accepted = 0

    # --- Public API ---

    def get(self, url: str, headers: Optional[Dict[str, str]] = None) -> Any:
        """GET ``url``, paying any 402, and return the parsed JSON body."""
        return self._json_or_raise(self.fetch_with_payment("GET", url, headers=headers))

    def post(self, url: str, body: Any = None, headers: Optional[Dict[str, str]] = None) -> Any:
        """POST ``body`` as JSON to ``url``, paying any 402, and return the parsed JSON body."""
        return self._json_or_raise(self.fetch_with_payment("POST", url, body=body, headers=headers))

    def total_spent_units(self, decimals: int = 6) -> Decimal:
        """Total signed away, in whole token units."""
        return Decimal(self.total_spent) / (Decimal(10) ** decimals)

    def fetch_with_payment(
        self,
        method: str,
        url: str,
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> requests.Response:
        """
        Send a request, answering 402 challenges with signed payments.

        Returns:
            The first non-402 response

        Raises:
            PaymentRetriesExceededError: Still 402 after max_retries payments
            PaymentRequirementsError: A 402 without usable requirements
            UnsupportedSchemeError: No offered scheme is supported
            UnsupportedNetworkError: No EIP-712 domain for the offered network
        """
        base_headers = {**DEFAULT_HEADERS, **(headers or {})}
        payment_header: Optional[str] = None
        paid_amount = 0

        for attempt in range(self.max_retries + 1):
            request_headers = dict(base_headers)
            if payment_header:
                request_headers[X_PAYMENT_HEADER] = payment_header

            response = self.session.request(
                method,
                url,
                json=body,
                headers=request_headers,
                timeout=self.timeout,
            )

            if response.status_code != 402:
                if payment_header and response.status_code < 400:
                    self.total_accepted += paid_amount
                return response

            response_body = _response_body(response)
            if attempt >= self.max_retries:
                raise PaymentRetriesExceededError(url, self.max_retries, response_body)

            if payment_header:
                reason = response_body.get("reason") if isinstance(response_body, dict) else None
                logger.warning(f"x402: Payment rejected for {url}: {reason}")

            requirements = self._select_requirements(response_body)
            logger.info(
                f"x402: Payment required for {url}: {requirements.max_amount_required} "
                f"base units to {requirements.pay_to} on {requirements.network}"
            )
            payment_header = self.build_payment_header(requirements)
            paid_amount = int(requirements.max_amount_required)

        # range() always ends in a return or raise above
        raise PaymentRetriesExceededError(url, self.max_retries)

    # --- Payment construction ---

    def _select_requirements(self, body: Any) -> PaymentRequirements:
        offers: List[Any] = []
        if isinstance(body, dict):
            if isinstance(body.get("accepts"), list):
                offers = body["accepts"]
            elif isinstance(body.get("x402"), dict):
                offers = [body["x402"]]
        if not offers:
            raise PaymentRequirementsError(f"402 response missing payment requirements: {body}")

        for offer in offers:
            if isinstance(offer, dict) and offer.get("scheme") in SUPPORTED_SCHEMES:
                try:
                    return PaymentRequirements.model_validate(offer)
                except ValueError as e:
                    raise PaymentRequirementsError(f"Malformed payment requirements: {e}") from e

        schemes = [offer.get("scheme") for offer in offers if isinstance(offer, dict)]
        raise UnsupportedSchemeError(f"No supported payment scheme in {schemes}")

    def resolve_domain(self, requirements: PaymentRequirements) -> EIP712Domain:
        """
        Pick the EIP-712 domain to sign under.

        Order: domain embedded by the server, then ``domain_overrides`` for the
        asset, then a domain built from the known network table.
        """
        extra = requirements.extra
        if extra is not None and extra.eip712_domain is not None:
            return extra.eip712_domain

        override = self.domain_overrides.get(requirements.asset.lower())
        if override:
            return EIP712Domain.model_validate(override)

        chain_id = self.networks.get(requirements.network)
        if chain_id is None and extra is not None:
            chain_id = (extra.model_extra or {}).get("chainId")
        if chain_id is None:
            raise UnsupportedNetworkError(f"Unknown network for EIP-712 domain: {requirements.network}")

        hints = (extra.model_extra or {}) if extra is not None else {}
        return EIP712Domain(
            name=hints.get("tokenName", "USD Coin"),
            version=hints.get("tokenVersion", "1"),
            chain_id=int(chain_id),
            verifying_contract=requirements.asset,
        )

    def build_payment_header(self, requirements: PaymentRequirements) -> str:
        """Sign an authorization for ``requirements`` and encode it as an X-PAYMENT value."""
        domain = self.resolve_domain(requirements)

        now = int(time.time())
        extra = requirements.extra
        valid_after = extra.valid_after if extra and extra.valid_after is not None else now - 60
        valid_before = (
            extra.valid_before if extra and extra.valid_before is not None
            else now + requirements.max_timeout_seconds
        )
        value = int(requirements.max_amount_required)
        nonce = create_nonce()

        v, r, s = sign_authorization(
            self.account,
            domain,
            requirements.pay_to,
            value,
            valid_after,
            valid_before,
            nonce,
        )
        self.total_spent += value
        logger.debug(f"x402: Signed EIP-3009 transfer nonce={nonce[:10]}...")

        envelope = {
            "x402Version": X402_VERSION,
            "scheme": requirements.scheme,
            "network": requirements.network,
            "payload": {
                "from": self.account.address,
                "to": requirements.pay_to,
                "value": str(value),
                "validAfter": str(valid_after),
                "validBefore": str(valid_before),
                "nonce": nonce,
                "v": v,
                "r": r,
                "s": s,
            },
        }
        return safe_base64_encode(json.dumps(envelope).encode("utf-8"))

    def _json_or_raise(self, response: requests.Response) -> Any:
        body = _response_body(response)
        if response.status_code >= 400:
            raise X402HTTPError(response.status_code, body, response.url)
        return body
