# tests/test_x402_verifier.py
"""
Unit tests for x402 payment verification.

The verifier runs on a fixed clock. Settlement is exercised through a fake
ledger with the same interface as LedgerClient.
"""
import base64
import json
import time
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest

from app.x402.ledger import (
    LedgerUnavailableError,
    SettlementRevertedError,
    Supported,
    Unsupported,
)
from app.x402.nonce_store import FileNonceStore, NonceStore, NonceStoreError
from app.x402.verifier import (
    ERR_EXPIRED,
    ERR_INSUFFICIENT_AMOUNT,
    ERR_INVALID_PAYLOAD,
    ERR_INVALID_PAYMENT_HEADER,
    ERR_INVALID_SIGNATURE,
    ERR_MISSING_FIELDS,
    ERR_NETWORK_MISMATCH,
    ERR_NONCE_ALREADY_USED,
    ERR_NONCE_USED_ON_CHAIN,
    ERR_NOT_YET_VALID,
    ERR_RECIPIENT_MISMATCH,
    ERR_SETTLEMENT_FAILED,
    ERR_UNSUPPORTED_SCHEME,
    ERR_UNSUPPORTED_VERSION,
    MODE_SETTLED,
    MODE_SIGNATURE_ONLY,
    PaymentConfigurationError,
    create_payment_verifier,
    decode_payment_header,
    get_payment_verifier,
    reset_payment_verifier,
)

RESOURCE = "/credit/0x741c03c0d95d2c15e479ce1c7e69b3196d86fad7"
TX = "0x" + "cd" * 32


class FakeLedger:
    """Stand-in for LedgerClient with scripted outcomes."""

    def __init__(
        self,
        state=Supported(False),
        transfer=Supported(TX),
        can_settle=True,
        state_error=None,
        transfer_error=None,
        transfer_delay=0.0,
    ):
        self.state = state
        self.transfer = transfer
        self.can_settle = can_settle
        self.state_error = state_error
        self.transfer_error = transfer_error
        self.transfer_delay = transfer_delay
        self.transfers = []

    def authorization_state(self, authorizer, nonce):
        if self.state_error:
            raise self.state_error
        return self.state

    def transfer_with_authorization(self, payload):
        if self.transfer_delay:
            time.sleep(self.transfer_delay)
        self.transfers.append(payload)
        if self.transfer_error:
            raise self.transfer_error
        return self.transfer


def _b64(data) -> str:
    return base64.b64encode(json.dumps(data).encode()).decode()


class TestDecodePaymentHeader:
    """Test X-PAYMENT decoding."""

    def test_valid(self):
        assert decode_payment_header(_b64({"x402Version": 1})) == {"x402Version": 1}

    def test_not_base64(self):
        with pytest.raises(ValueError):
            decode_payment_header("not-base64!!!")

    def test_not_json(self):
        with pytest.raises(ValueError):
            decode_payment_header(base64.b64encode(b"hello").decode())

    def test_not_object(self):
        with pytest.raises(ValueError):
            decode_payment_header(_b64([1, 2]))


class TestBuildRequirements:
    """Test challenge construction."""

    def test_fields(self, make_verifier, pay_to):
        req = make_verifier().build_requirements(RESOURCE, "Credit assessment")

        assert req.scheme == "eip3009"
        assert req.network == "arc-testnet"
        assert req.max_amount_required == "1000000"
        assert req.resource == RESOURCE
        assert req.description == "Credit assessment"
        assert req.pay_to == pay_to
        assert req.max_timeout_seconds == 300

    def test_validity_window(self, make_verifier, now):
        """validAfter allows clock skew; validBefore is the timeout."""
        extra = make_verifier().build_requirements(RESOURCE).extra

        assert extra.valid_after == now - 60
        assert extra.valid_before == now + 300
        assert extra.decimals == 6

    def test_embeds_domain(self, make_verifier, domain):
        dumped = make_verifier().build_requirements(RESOURCE).model_dump(by_alias=True)

        assert dumped["extra"]["eip712Domain"] == {
            "name": "USD Coin",
            "version": "1",
            "chainId": 5042002,
            "verifyingContract": domain.verifying_contract,
        }

    def test_invalid_pay_to(self, make_verifier):
        with pytest.raises(PaymentConfigurationError):
            make_verifier(pay_to="0xnot-an-address")


class TestVerifyAccepted:
    """Test payments that should be accepted."""

    def test_exact_amount(self, make_verifier, make_header, payer):
        """value == maxAmountRequired (1.0 at 6 decimals) is accepted."""
        verifier = make_verifier()
        req = verifier.build_requirements(RESOURCE)

        result = verifier.verify(make_header(value=1000000), req)

        assert result.is_valid is True
        assert result.mode == MODE_SIGNATURE_ONLY
        assert result.payer == payer.address
        assert result.amount == "1000000"

    def test_overpayment(self, make_verifier, make_header):
        verifier = make_verifier()
        result = verifier.verify(make_header(value=1500000), verifier.build_requirements(RESOURCE))
        assert result.is_valid is True

    def test_nonce_recorded(self, make_verifier, make_payload, make_header):
        store = NonceStore()
        verifier = make_verifier(nonce_store=store)
        payload = make_payload()

        verifier.verify(make_header(payload=payload), verifier.build_requirements(RESOURCE))

        assert store.has(payload["nonce"])

    def test_lowercase_recipient(self, make_verifier, make_header, pay_to):
        """Recipient comparison ignores address case."""
        verifier = make_verifier()
        result = verifier.verify(make_header(to=pay_to.lower()), verifier.build_requirements(RESOURCE))
        assert result.is_valid is True

    def test_boundary_times(self, make_verifier, make_header, now):
        """now == validAfter and now == validBefore are inside the window."""
        verifier = make_verifier()
        req = verifier.build_requirements(RESOURCE)
        assert verifier.verify(make_header(valid_after=now), req).is_valid is True
        assert verifier.verify(make_header(valid_before=now), req).is_valid is True


class TestVerifyRejected:
    """Test each rejection reason."""

    def _verify(self, verifier, header):
        return verifier.verify(header, verifier.build_requirements(RESOURCE))

    def test_malformed_header(self, make_verifier):
        result = self._verify(make_verifier(), "%%%")
        assert result.is_valid is False
        assert result.reason == ERR_INVALID_PAYMENT_HEADER
        assert result.status_code == 402

    def test_unsupported_version(self, make_verifier, make_header):
        """A version mismatch is rejected outright with 400."""
        result = self._verify(make_verifier(), make_header(version=2))
        assert result.reason == ERR_UNSUPPORTED_VERSION
        assert result.status_code == 400

    def test_missing_version(self, make_verifier, make_header):
        result = self._verify(make_verifier(), make_header(version=None))
        assert result.reason == ERR_UNSUPPORTED_VERSION

    @pytest.mark.parametrize("version", [True, 1.0, "1"])
    def test_version_must_be_integer(self, make_verifier, make_header, version):
        result = self._verify(make_verifier(), make_header(version=version))
        assert result.reason == ERR_UNSUPPORTED_VERSION
        assert result.status_code == 400

    def test_unsupported_scheme(self, make_verifier, make_header):
        result = self._verify(make_verifier(), make_header(scheme="exact"))
        assert result.reason == ERR_UNSUPPORTED_SCHEME

    def test_network_mismatch(self, make_verifier, make_header):
        result = self._verify(make_verifier(), make_header(network="base-sepolia"))
        assert result.reason == ERR_NETWORK_MISMATCH

    def test_missing_payload(self, make_verifier):
        header = _b64({"x402Version": 1, "scheme": "eip3009", "network": "arc-testnet"})
        result = self._verify(make_verifier(), header)
        assert result.reason == ERR_MISSING_FIELDS

    @pytest.mark.parametrize("field", ["from", "to", "value", "validBefore", "nonce", "v", "r", "s"])
    def test_missing_field(self, make_verifier, make_payload, make_header, field):
        payload = make_payload()
        del payload[field]
        result = self._verify(make_verifier(), make_header(payload=payload))
        assert result.reason == ERR_MISSING_FIELDS
        assert field in result.message

    def test_malformed_field(self, make_verifier, make_header):
        result = self._verify(make_verifier(), make_header(tamper={"nonce": "0x1234"}))
        assert result.reason == ERR_INVALID_PAYLOAD

    def test_non_numeric_value(self, make_verifier, make_header):
        result = self._verify(make_verifier(), make_header(tamper={"value": "one"}))
        assert result.reason == ERR_INVALID_PAYLOAD

    @pytest.mark.parametrize("field", ["value", "validAfter", "validBefore"])
    def test_non_ascii_digits(self, make_verifier, make_header, field):
        """Unicode digits are not decimal numbers."""
        result = self._verify(make_verifier(), make_header(tamper={field: "\u00b2"}))
        assert result.is_valid is False
        assert result.reason == ERR_INVALID_PAYLOAD

    def test_value_wider_than_uint256(self, make_verifier, make_header):
        result = self._verify(make_verifier(), make_header(tamper={"value": "9" * 5000}))
        assert result.reason == ERR_INVALID_PAYLOAD

    def test_largest_uint256_accepted_as_amount(self, make_verifier, make_header):
        """A 78-digit value passes validation and fails later on the signature."""
        result = self._verify(make_verifier(), make_header(tamper={"value": str(2 ** 256 - 1)}))
        assert result.reason == ERR_INVALID_SIGNATURE

    def test_recipient_mismatch(self, make_verifier, make_header):
        result = self._verify(make_verifier(), make_header(to="0x" + "44" * 20))
        assert result.reason == ERR_RECIPIENT_MISMATCH

    def test_insufficient_amount(self, make_verifier, make_header, payer):
        """Half the required amount is rejected."""
        result = self._verify(make_verifier(), make_header(value=500000))
        assert result.reason == ERR_INSUFFICIENT_AMOUNT
        assert result.status_code == 402
        assert result.payer == payer.address

    def test_expired(self, make_verifier, make_header, now):
        """Expiry wins even when the signature is valid."""
        result = self._verify(make_verifier(), make_header(valid_before=now - 1))
        assert result.reason == ERR_EXPIRED

    def test_not_yet_valid(self, make_verifier, make_header, now):
        result = self._verify(make_verifier(), make_header(valid_after=now + 1))
        assert result.reason == ERR_NOT_YET_VALID

    def test_signer_mismatch(self, make_verifier, make_header, other_account):
        result = self._verify(make_verifier(), make_header(signer=other_account))
        assert result.reason == ERR_INVALID_SIGNATURE

    def test_tampered_value(self, make_verifier, make_header):
        """Raising the value after signing invalidates the signature."""
        result = self._verify(make_verifier(), make_header(tamper={"value": "2000000"}))
        assert result.reason == ERR_INVALID_SIGNATURE

    def test_rejected_nonce_not_recorded(self, make_verifier, make_payload, make_header):
        """A failed verification leaves the nonce usable."""
        store = NonceStore()
        verifier = make_verifier(nonce_store=store)
        payload = make_payload(tamper={"value": "2000000"})

        self._verify(verifier, make_header(payload=payload))

        assert not store.has(payload["nonce"])


class TestReplay:
    """Test nonce replay protection."""

    def test_same_header_twice(self, make_verifier, make_header):
        verifier = make_verifier()
        req = verifier.build_requirements(RESOURCE)
        header = make_header()

        assert verifier.verify(header, req).is_valid is True
        second = verifier.verify(header, req)

        assert second.is_valid is False
        assert second.reason == ERR_NONCE_ALREADY_USED

    def test_resigned_same_nonce(self, make_verifier, make_header):
        """A fresh signature does not make a used nonce reusable."""
        verifier = make_verifier()
        req = verifier.build_requirements(RESOURCE)
        nonce = "0x" + "5a" * 32

        assert verifier.verify(make_header(nonce=nonce), req).is_valid is True
        result = verifier.verify(make_header(nonce=nonce, value=1000001), req)

        assert result.reason == ERR_NONCE_ALREADY_USED

    def test_replay_after_restart(self, make_verifier, make_header, tmp_path):
        """A nonce used before a restart is still rejected afterwards."""
        path = tmp_path / "nonces.json"
        header = make_header()

        before = make_verifier(nonce_store=FileNonceStore(path))
        assert before.verify(header, before.build_requirements(RESOURCE)).is_valid is True

        after = make_verifier(nonce_store=FileNonceStore(path))
        result = after.verify(header, after.build_requirements(RESOURCE))

        assert result.reason == ERR_NONCE_ALREADY_USED

    def test_concurrent_same_nonce(self, make_verifier, make_header):
        """Of several simultaneous requests with one nonce, exactly one wins."""
        ledger = FakeLedger(transfer_delay=0.05)
        verifier = make_verifier(ledger=ledger)
        req = verifier.build_requirements(RESOURCE)
        header = make_header()

        with ThreadPoolExecutor(max_workers=6) as pool:
            results = list(pool.map(lambda _: verifier.verify(header, req), range(6)))

        assert sum(r.is_valid for r in results) == 1
        assert all(r.reason == ERR_NONCE_ALREADY_USED for r in results if not r.is_valid)
        assert len(ledger.transfers) == 1

    def test_store_write_failure_propagates(self, make_verifier, make_header):
        """A nonce that cannot be persisted fails the request."""
        store = NonceStore()
        verifier = make_verifier(nonce_store=store)

        with patch.object(store, "_persist", side_effect=NonceStoreError("disk full")):
            with pytest.raises(NonceStoreError):
                verifier.verify(make_header(), verifier.build_requirements(RESOURCE))

        assert verifier._inflight == set()


class TestSettlement:
    """Test the ledger settlement paths."""

    def _verify(self, verifier, header):
        return verifier.verify(header, verifier.build_requirements(RESOURCE))

    def test_settled(self, make_verifier, make_header):
        ledger = FakeLedger()
        result = self._verify(make_verifier(ledger=ledger), make_header())

        assert result.is_valid is True
        assert result.mode == MODE_SETTLED
        assert result.transaction == TX
        assert len(ledger.transfers) == 1

    def test_settled_without_signature_only(self, make_verifier, make_header):
        """Settlement does not need the signature-only fallback enabled."""
        verifier = make_verifier(ledger=FakeLedger(), allow_signature_only=False)
        assert self._verify(verifier, make_header()).mode == MODE_SETTLED

    def test_nonce_used_on_chain(self, make_verifier, make_payload, make_header):
        store = NonceStore()
        ledger = FakeLedger(state=Supported(True))
        verifier = make_verifier(ledger=ledger, nonce_store=store)
        payload = make_payload()

        result = self._verify(verifier, make_header(payload=payload))

        assert result.reason == ERR_NONCE_USED_ON_CHAIN
        assert ledger.transfers == []
        assert not store.has(payload["nonce"])

    def test_authorization_state_unsupported(self, make_verifier, make_header):
        """Tokens without authorizationState still settle."""
        ledger = FakeLedger(state=Unsupported())
        assert self._verify(make_verifier(ledger=ledger), make_header()).mode == MODE_SETTLED

    def test_authorization_state_unreachable(self, make_verifier, make_header):
        """An unreachable state check is skipped, not a rejection."""
        ledger = FakeLedger(state_error=LedgerUnavailableError("timeout"))
        assert self._verify(make_verifier(ledger=ledger), make_header()).mode == MODE_SETTLED

    def test_reverted(self, make_verifier, make_header):
        ledger = FakeLedger(transfer_error=SettlementRevertedError("FiatTokenV2: invalid signature"))
        result = self._verify(make_verifier(ledger=ledger), make_header())

        assert result.reason == ERR_SETTLEMENT_FAILED
        assert "invalid signature" in result.message

    def test_bad_signature_not_submitted(self, make_verifier, make_header, other_account):
        """Invalid signatures are rejected before paying gas."""
        ledger = FakeLedger()
        result = self._verify(make_verifier(ledger=ledger), make_header(signer=other_account))

        assert result.reason == ERR_INVALID_SIGNATURE
        assert ledger.transfers == []

    def test_outage_falls_back_to_signature(self, make_verifier, make_header):
        ledger = FakeLedger(transfer_error=LedgerUnavailableError("receipt timeout"))
        result = self._verify(make_verifier(ledger=ledger), make_header())

        assert result.is_valid is True
        assert result.mode == MODE_SIGNATURE_ONLY
        assert result.transaction is None
        assert "receipt timeout" in result.fallback_reason

    def test_outage_without_fallback_raises(self, make_verifier, make_payload, make_header):
        """With signature-only disabled an outage is a server error, not a rejection."""
        store = NonceStore()
        ledger = FakeLedger(transfer_error=LedgerUnavailableError("receipt timeout"))
        verifier = make_verifier(ledger=ledger, nonce_store=store, allow_signature_only=False)
        payload = make_payload()

        with pytest.raises(LedgerUnavailableError):
            self._verify(verifier, make_header(payload=payload))

        assert not store.has(payload["nonce"])
        assert verifier._inflight == set()

    def test_transfer_unsupported_falls_back(self, make_verifier, make_header):
        ledger = FakeLedger(transfer=Unsupported("transferWithAuthorization not implemented by token"))
        result = self._verify(make_verifier(ledger=ledger), make_header())

        assert result.mode == MODE_SIGNATURE_ONLY
        assert "not implemented" in result.fallback_reason

    def test_transfer_unsupported_without_fallback(self, make_verifier, make_header):
        ledger = FakeLedger(transfer=Unsupported())
        verifier = make_verifier(ledger=ledger, allow_signature_only=False)

        with pytest.raises(PaymentConfigurationError):
            self._verify(verifier, make_header())

    def test_no_settlement_key(self, make_verifier, make_header):
        ledger = FakeLedger(can_settle=False)
        result = self._verify(make_verifier(ledger=ledger), make_header())

        assert result.mode == MODE_SIGNATURE_ONLY
        assert result.fallback_reason == "no settlement key configured"
        assert ledger.transfers == []

    def test_no_settlement_key_and_ledger_down(self, make_verifier, make_header):
        ledger = FakeLedger(can_settle=False, state_error=LedgerUnavailableError("refused"))
        verifier = make_verifier(ledger=ledger, allow_signature_only=False)

        with pytest.raises(LedgerUnavailableError):
            self._verify(verifier, make_header())

    def test_no_ledger_without_fallback(self, make_verifier, make_header):
        verifier = make_verifier(allow_signature_only=False)
        with pytest.raises(PaymentConfigurationError):
            self._verify(verifier, make_header())


class TestGlobalVerifier:
    """Test building the verifier from settings."""

    def setup_method(self):
        reset_payment_verifier()

    def teardown_method(self):
        reset_payment_verifier()

    @patch("app.x402.verifier.settings")
    def test_requires_pay_to(self, mock_settings):
        mock_settings.X402_PAY_TO_ADDRESS = None
        with pytest.raises(PaymentConfigurationError):
            create_payment_verifier()

    @patch("app.x402.verifier.create_ledger_client")
    @patch("app.x402.verifier.get_nonce_store")
    @patch("app.x402.verifier.settings")
    def test_from_settings(self, mock_settings, mock_store, mock_ledger, pay_to):
        mock_settings.X402_PAY_TO_ADDRESS = pay_to.lower()
        mock_settings.X402_NETWORK = "arc-testnet"
        mock_settings.X402_ASSET_ADDRESS = "0xf2807051e292e945751a25616705a9aadfb39895"
        mock_settings.X402_CHAIN_ID = 5042002
        mock_settings.X402_PRICE_AMOUNT = 250000
        mock_settings.X402_TOKEN_NAME = "USD Coin"
        mock_settings.X402_TOKEN_VERSION = "2"
        mock_settings.X402_TOKEN_DECIMALS = 6
        mock_settings.X402_MAX_TIMEOUT_SECONDS = 120
        mock_settings.X402_VALIDITY_GRACE_SECONDS = 30
        mock_settings.X402_ALLOW_SIGNATURE_ONLY = False
        mock_store.return_value = NonceStore()

        verifier = get_payment_verifier()

        assert get_payment_verifier() is verifier
        assert verifier.pay_to == pay_to
        assert verifier.price_amount == 250000
        assert verifier.domain.version == "2"
        assert verifier.ledger is mock_ledger.return_value
        mock_ledger.assert_called_once()
