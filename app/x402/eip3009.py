# app/x402/eip3009.py
"""
EIP-3009 TransferWithAuthorization typed-data helpers.

The same digest construction is used by the client to sign and by the
server to recover the signer, so both sides must pass the domain the
server advertised in ``extra.eip712Domain``.
"""
import secrets
from typing import Any, Dict, Tuple, Union

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_keys.exceptions import BadSignature, ValidationError as KeyValidationError
from eth_utils import to_checksum_address

from app.x402.types import AuthorizationPayload, EIP712Domain

EIP712_DOMAIN_FIELDS = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

TRANSFER_WITH_AUTHORIZATION_FIELDS = [
    {"name": "from", "type": "address"},
    {"name": "to", "type": "address"},
    {"name": "value", "type": "uint256"},
    {"name": "validAfter", "type": "uint256"},
    {"name": "validBefore", "type": "uint256"},
    {"name": "nonce", "type": "bytes32"},
]

PRIMARY_TYPE = "TransferWithAuthorization"

DomainLike = Union[EIP712Domain, Dict[str, Any]]


def create_nonce() -> str:
    """Create a random 32-byte 0x-prefixed hex nonce."""
    return "0x" + secrets.token_hex(32)


def _domain_dict(domain: DomainLike) -> Dict[str, Any]:
    if isinstance(domain, dict):
        domain = EIP712Domain.model_validate(domain)
    data = domain.to_typed_data()
    data["verifyingContract"] = to_checksum_address(data["verifyingContract"])
    return data


def build_typed_data(
    domain: DomainLike,
    from_address: str,
    to_address: str,
    value: int,
    valid_after: int,
    valid_before: int,
    nonce: str,
) -> Dict[str, Any]:
    """Build the full EIP-712 message for a TransferWithAuthorization."""
    return {
        "types": {
            "EIP712Domain": EIP712_DOMAIN_FIELDS,
            PRIMARY_TYPE: TRANSFER_WITH_AUTHORIZATION_FIELDS,
        },
        "primaryType": PRIMARY_TYPE,
        "domain": _domain_dict(domain),
        "message": {
            "from": to_checksum_address(from_address),
            "to": to_checksum_address(to_address),
            "value": int(value),
            "validAfter": int(valid_after),
            "validBefore": int(valid_before),
            "nonce": nonce,
        },
    }


def sign_authorization(
    account,
    domain: DomainLike,
    to_address: str,
    value: int,
    valid_after: int,
    valid_before: int,
    nonce: str,
) -> Tuple[int, str, str]:
    """
    Sign a TransferWithAuthorization from ``account`` under ``domain``.

    Args:
        account: eth_account LocalAccount of the payer
        domain: Typed-data domain to bind the signature to
        to_address: Payee
        value: Amount in token base units
        valid_after: Unix seconds the authorization becomes valid
        valid_before: Unix seconds the authorization expires
        nonce: 32-byte 0x-hex nonce

    Returns:
        Tuple of (v, r, s) with r and s as 0x-prefixed 32-byte hex
    """
    typed_data = build_typed_data(
        domain, account.address, to_address, value, valid_after, valid_before, nonce
    )
    signed = account.sign_typed_data(full_message=typed_data)
    return signed.v, f"0x{signed.r:064x}", f"0x{signed.s:064x}"


def recover_signer(domain: DomainLike, payload: AuthorizationPayload) -> str:
    """Recover the address that signed ``payload`` under ``domain``."""
    typed_data = build_typed_data(
        domain,
        payload.from_,
        payload.to,
        int(payload.value),
        int(payload.valid_after),
        int(payload.valid_before),
        payload.nonce,
    )
    signable = encode_typed_data(full_message=typed_data)
    return Account.recover_message(
        signable, vrs=(payload.v, int(payload.r, 16), int(payload.s, 16))
    )


def is_valid_signature(domain: DomainLike, payload: AuthorizationPayload) -> bool:
    """True if the payload was signed by its declared ``from`` address."""
    try:
        recovered = recover_signer(domain, payload)
    except (ValueError, TypeError, BadSignature, KeyValidationError):
        # Malformed addresses or an out-of-range signature component
        return False
    return recovered.lower() == payload.from_.lower()
