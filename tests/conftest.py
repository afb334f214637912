# tests/conftest.py
"""
Shared fixtures for x402 tests.

Signing uses real eth_account keys; the verifier runs on a fixed clock.
"""
import json

import pytest
from eth_account import Account
from eth_utils import to_checksum_address
from x402.encoding import safe_base64_encode

from app.core.config import settings
from app.x402.eip3009 import create_nonce, sign_authorization
from app.x402.nonce_store import NonceStore
from app.x402.types import EIP712Domain
from app.x402.verifier import PaymentVerifier

NOW = 1_700_000_000
NETWORK = "arc-testnet"
CHAIN_ID = 5042002
ASSET = to_checksum_address("0xf2807051e292e945751a25616705a9aadfb39895")
PRICE = 1_000_000

PAYER_KEY = "0x" + "11" * 32
OTHER_KEY = "0x" + "22" * 32
PAY_TO_KEY = "0x" + "33" * 32


@pytest.fixture(autouse=True)
def isolated_audit_log(tmp_path, monkeypatch):
    """Send audit events to a per-test file."""
    path = tmp_path / "logs" / "x402_audit.jsonl"
    monkeypatch.setattr(settings, "X402_AUDIT_LOG_PATH", str(path))
    return path


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def payer():
    return Account.from_key(PAYER_KEY)


@pytest.fixture
def other_account():
    return Account.from_key(OTHER_KEY)


@pytest.fixture
def pay_to():
    return Account.from_key(PAY_TO_KEY).address


@pytest.fixture
def domain():
    return EIP712Domain(
        name="USD Coin",
        version="1",
        chain_id=CHAIN_ID,
        verifying_contract=ASSET,
    )


@pytest.fixture
def make_verifier(pay_to):
    """Factory for a PaymentVerifier on the fixed clock."""
    def _make(**overrides):
        kwargs = dict(
            pay_to=pay_to,
            network=NETWORK,
            asset=ASSET,
            chain_id=CHAIN_ID,
            price_amount=PRICE,
            nonce_store=NonceStore(),
            ledger=None,
            allow_signature_only=True,
            clock=lambda: NOW,
        )
        kwargs.update(overrides)
        return PaymentVerifier(**kwargs)
    return _make


@pytest.fixture
def make_payload(payer, pay_to, domain):
    """
    Factory for a signed authorization payload dict.

    ``signer`` signs while ``payer`` is declared as ``from``; ``tamper`` is
    applied after signing.
    """
    def _make(
        value=PRICE,
        to=None,
        valid_after=NOW - 60,
        valid_before=NOW + 300,
        nonce=None,
        signer=None,
        sign_domain=None,
        tamper=None,
    ):
        to = to or pay_to
        nonce = nonce or create_nonce()
        signer = signer or payer
        v, r, s = sign_authorization(
            signer, sign_domain or domain, to, value, valid_after, valid_before, nonce
        )
        payload = {
            "from": payer.address,
            "to": to,
            "value": str(value),
            "validAfter": str(valid_after),
            "validBefore": str(valid_before),
            "nonce": nonce,
            "v": v,
            "r": r,
            "s": s,
        }
        payload.update(tamper or {})
        return payload
    return _make


def encode_envelope(payload, version=1, scheme="eip3009", network=NETWORK):
    envelope = {
        "x402Version": version,
        "scheme": scheme,
        "network": network,
        "payload": payload,
    }
    return safe_base64_encode(json.dumps(envelope).encode("utf-8"))


@pytest.fixture
def make_header(make_payload):
    """Factory for a base64 X-PAYMENT header around a signed payload."""
    def _make(version=1, scheme="eip3009", network=NETWORK, payload=None, **payload_kwargs):
        if payload is None:
            payload = make_payload(**payload_kwargs)
        return encode_envelope(payload, version=version, scheme=scheme, network=network)
    return _make
