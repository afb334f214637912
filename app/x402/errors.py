# app/x402/errors.py
"""Exceptions raised by the x402 payment client."""
from typing import Any, Optional


class X402Error(Exception):
    """Base class for x402 client errors."""

    pass


class PaymentRequirementsError(X402Error):
    """Raised when a 402 response carries no usable payment requirements."""

    pass


class UnsupportedSchemeError(X402Error):
    """Raised when none of the offered payment schemes can be signed."""

    pass


class UnsupportedNetworkError(X402Error):
    """Raised when no EIP-712 domain can be resolved for the offered network."""

    pass


class PaymentRetriesExceededError(X402Error):
    """Raised when the server keeps answering 402 after the retry budget is spent."""

    def __init__(self, url: str, max_retries: int, last_body: Any = None):
        self.url = url
        self.max_retries = max_retries
        self.last_body = last_body
        super().__init__(f"Max retries ({max_retries}) exceeded for {url}")


class X402HTTPError(X402Error):
    """Raised for non-402 error responses."""

    def __init__(self, status_code: int, body: Any, url: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        self.url = url
        super().__init__(f"HTTP {status_code}: {body}")
