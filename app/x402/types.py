# app/x402/types.py
"""
Wire types for the x402 payment protocol.

All models serialize with camelCase aliases (``maxAmountRequired``,
``payTo``, ``x402Version`` ...) and accept either the alias or the
field name on input.
"""
import re
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

X402_VERSION = 1
SCHEME_EIP3009 = "eip3009"

_BYTES32_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")
# ASCII digits only; uint256 never needs more than 78
_UINT_RE = re.compile(r"[0-9]{1,78}")


def _validate_uint_string(value: Any, field_name: str) -> str:
    """Accept ints or decimal strings, return the decimal string form."""
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be an integer")
    if isinstance(value, int):
        value = str(value)
    if not isinstance(value, str) or not _UINT_RE.fullmatch(value):
        raise ValueError(f"{field_name} must be a non-negative integer encoded as a string")
    return value


class EIP712Domain(BaseModel):
    """Typed-data domain the authorization signature is bound to."""
    name: str
    version: str
    chain_id: int
    verifying_contract: str

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_typed_data(self) -> dict:
        """Return the domain in the shape eth_account expects."""
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chain_id,
            "verifyingContract": self.verifying_contract,
        }


class PaymentExtra(BaseModel):
    """Asset-specific parameters carried in ``PaymentRequirements.extra``."""
    decimals: int = 6
    valid_after: Optional[int] = None
    valid_before: Optional[int] = None
    eip712_domain: Optional[EIP712Domain] = Field(None, alias="eip712Domain")

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


class PaymentRequirements(BaseModel):
    scheme: str
    network: str
    max_amount_required: str
    resource: str
    description: str = ""
    mime_type: str = "application/json"
    pay_to: str
    max_timeout_seconds: int
    asset: str
    extra: Optional[PaymentExtra] = None

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    @field_validator("max_amount_required", mode="before")
    @classmethod
    def validate_amount(cls, v):
        return _validate_uint_string(v, "maxAmountRequired")


# Returned by the server as the body of a 402 challenge
class PaymentRequiredResponse(BaseModel):
    x402_version: int = X402_VERSION
    error: str
    accepts: List[PaymentRequirements]

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


class AuthorizationPayload(BaseModel):
    """EIP-3009 TransferWithAuthorization fields plus the v/r/s signature."""
    from_: str = Field(alias="from")
    to: str
    value: str
    valid_after: str
    valid_before: str
    nonce: str
    v: int
    r: str
    s: str

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    @field_validator("value", "valid_after", "valid_before", mode="before")
    @classmethod
    def validate_uint(cls, v, info):
        return _validate_uint_string(v, info.field_name)

    @field_validator("nonce", "r", "s")
    @classmethod
    def validate_bytes32(cls, v, info):
        if not _BYTES32_RE.match(v):
            raise ValueError(f"{info.field_name} must be 32 bytes of 0x-prefixed hex")
        return v.lower()


class PaymentEnvelope(BaseModel):
    """Decoded contents of the X-PAYMENT header."""
    x402_version: int
    scheme: str
    network: str
    payload: AuthorizationPayload

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


class PaymentRejection(BaseModel):
    """Body of a 402 sent when a supplied payment was not accepted."""
    error: str
    reason: str
    x402: Optional[PaymentRequirements] = None


class SettlementInfo(BaseModel):
    """Contents of the X-PAYMENT-RESPONSE header on paid responses."""
    success: bool
    mode: str
    transaction: Optional[str] = None
    network: str
    payer: str

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )
