# app/x402/ledger.py
"""
EIP-3009 token access for payment verification and settlement.

Not every token the gateway is pointed at implements EIP-3009 (test and
mock stablecoins usually do not). Calls that a token cannot serve return
``Unsupported`` instead of raising, so the verifier can choose another
path. Everything else is an error:

- ``LedgerUnavailableError``: RPC unreachable, timed out, answered with a
  JSON-RPC error, or the transaction receipt never arrived
- ``SettlementRevertedError``: the token understood the call and refused it
"""
import logging
from dataclasses import dataclass
from typing import Generic, Optional, TypeVar, Union

from eth_account import Account
from requests.exceptions import RequestException
from web3 import Web3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError, TimeExhausted, Web3RPCError
from web3.middleware import ExtraDataToPOAMiddleware

from app.core.config import settings
from app.x402.types import AuthorizationPayload

logger = logging.getLogger(__name__)

T = TypeVar("T")

EIP3009_ABI = [
    {
        "inputs": [
            {"name": "from", "type": "address"},
            {"name": "to", "type": "address"},
            {"name": "value", "type": "uint256"},
            {"name": "validAfter", "type": "uint256"},
            {"name": "validBefore", "type": "uint256"},
            {"name": "nonce", "type": "bytes32"},
            {"name": "v", "type": "uint8"},
            {"name": "r", "type": "bytes32"},
            {"name": "s", "type": "bytes32"},
        ],
        "name": "transferWithAuthorization",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "authorizer", "type": "address"},
            {"name": "nonce", "type": "bytes32"},
        ],
        "name": "authorizationState",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
]

TX_STATUS_SUCCESS = 1

# Revert payloads that carry no reason: the selector is not implemented
_EMPTY_REVERT_DATA = (None, "", "0x", "no data")


class LedgerUnavailableError(Exception):
    """The ledger could not be reached or did not answer in time."""


class SettlementRevertedError(Exception):
    """The token rejected the transferWithAuthorization call."""


@dataclass(frozen=True)
class Supported(Generic[T]):
    """The token implements the call; ``value`` is its result."""
    value: T


@dataclass(frozen=True)
class Unsupported:
    """The token does not implement the call."""
    reason: str = "not implemented by token"


Capability = Union[Supported[T], Unsupported]


def is_unsupported_call(error: Exception) -> bool:
    """True if ``error`` means the contract lacks the called function."""
    if isinstance(error, BadFunctionCallOutput):
        return True
    if isinstance(error, ContractLogicError):
        message = (getattr(error, "message", None) or str(error)).strip().rstrip(":")
        data = getattr(error, "data", None)
        return data in _EMPTY_REVERT_DATA and message in ("", "execution reverted")
    return False


class LedgerClient:
    """
    web3 wrapper over the payment token contract.

    Settlement requires ``settlement_private_key``; the account pays gas
    for ``transferWithAuthorization``.
    """

    def __init__(
        self,
        rpc_url: str,
        asset_address: str,
        chain_id: int,
        settlement_private_key: Optional[str] = None,
        timeout: int = 30,
        web3: Optional[Web3] = None,
    ):
        if web3 is None:
            web3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
            # Testnets commonly use PoA-style extraData
            web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        self.w3 = web3
        self.chain_id = chain_id
        self.timeout = timeout
        self.token = self.w3.eth.contract(
            address=Web3.to_checksum_address(asset_address), abi=EIP3009_ABI
        )

        self._account = None
        if settlement_private_key:
            if not settlement_private_key.startswith("0x"):
                settlement_private_key = "0x" + settlement_private_key
            self._account = Account.from_key(settlement_private_key)

    @property
    def can_settle(self) -> bool:
        """True if this client holds credentials to submit transfers."""
        return self._account is not None

    @property
    def settlement_address(self) -> Optional[str]:
        return self._account.address if self._account else None

    def authorization_state(self, authorizer: str, nonce: str) -> Capability[bool]:
        """
        Ask the token whether ``nonce`` has been consumed for ``authorizer``.

        Raises:
            LedgerUnavailableError: If the RPC endpoint cannot be reached
        """
        try:
            used = self.token.functions.authorizationState(
                Web3.to_checksum_address(authorizer), Web3.to_bytes(hexstr=nonce)
            ).call()
            return Supported(bool(used))
        except (ContractLogicError, BadFunctionCallOutput) as e:
            if is_unsupported_call(e):
                return Unsupported("authorizationState not implemented by token")
            raise LedgerUnavailableError(f"authorizationState call failed: {e}") from e
        except Web3RPCError as e:
            raise LedgerUnavailableError(f"Ledger RPC error: {e}") from e
        except (RequestException, TimeoutError, ConnectionError) as e:
            raise LedgerUnavailableError(f"Ledger RPC unreachable: {e}") from e

    def transfer_with_authorization(self, payload: AuthorizationPayload) -> Capability[str]:
        """
        Execute the signed transfer on-chain and wait for the receipt.

        Returns:
            Supported(transaction_hash) on success, Unsupported if the token
            has no transferWithAuthorization

        Raises:
            RuntimeError: If no settlement key is configured
            SettlementRevertedError: If the token reverted with a reason
            LedgerUnavailableError: If the RPC failed or the receipt timed out
        """
        if self._account is None:
            raise RuntimeError("No settlement key configured")

        fn = self.token.functions.transferWithAuthorization(
            Web3.to_checksum_address(payload.from_),
            Web3.to_checksum_address(payload.to),
            int(payload.value),
            int(payload.valid_after),
            int(payload.valid_before),
            Web3.to_bytes(hexstr=payload.nonce),
            payload.v,
            Web3.to_bytes(hexstr=payload.r),
            Web3.to_bytes(hexstr=payload.s),
        )

        try:
            tx = fn.build_transaction({
                "from": self._account.address,
                "nonce": self.w3.eth.get_transaction_count(self._account.address, "pending"),
                "chainId": self.chain_id,
            })
            signed = self._account.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.timeout)
        except (ContractLogicError, BadFunctionCallOutput) as e:
            if is_unsupported_call(e):
                return Unsupported("transferWithAuthorization not implemented by token")
            raise SettlementRevertedError(str(e)) from e
        except TimeExhausted as e:
            raise LedgerUnavailableError(f"Settlement receipt not received within {self.timeout}s") from e
        except Web3RPCError as e:
            raise LedgerUnavailableError(f"Ledger RPC error: {e}") from e
        except (RequestException, TimeoutError, ConnectionError) as e:
            raise LedgerUnavailableError(f"Ledger RPC unreachable: {e}") from e

        tx_hex = Web3.to_hex(tx_hash)
        if receipt.get("status") != TX_STATUS_SUCCESS:
            raise SettlementRevertedError(f"Settlement transaction {tx_hex} reverted")

        return Supported(tx_hex)


def create_ledger_client() -> LedgerClient:
    """Build a LedgerClient from X402_* settings."""
    return LedgerClient(
        rpc_url=settings.X402_RPC_URL,
        asset_address=settings.X402_ASSET_ADDRESS,
        chain_id=settings.X402_CHAIN_ID,
        settlement_private_key=settings.X402_SETTLEMENT_PRIVATE_KEY,
        timeout=settings.X402_LEDGER_TIMEOUT_SECONDS,
    )
