# app/services/credit_oracle.py
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from requests.exceptions import RequestException
from web3 import Web3
from web3.exceptions import Web3Exception

from app.core.config import settings

logger = logging.getLogger(__name__)

REPUTATION_ABI = [
    {
        "inputs": [{"name": "agent", "type": "address"}],
        "name": name,
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    }
    for name in (
        "getReputationScore",
        "calculateCreditLimit",
        "calculateCollateralRequirement",
        "calculateInterestRate",
    )
]

USDC_UNIT = 10 ** 6

# (minimum score, tier, recommendation), highest first
CREDIT_TIERS = [
    (800, "PRIME", "Approve - excellent credit history"),
    (600, "STANDARD", "Approve - good credit history"),
    (400, "SUBPRIME", "Approve with collateral"),
    (200, "HIGH_RISK", "Caution - limited history"),
    (0, "UNRATED", "Deny or require full collateral"),
]

AUTO_APPROVE_MIN_SCORE = 100
AUTO_APPROVE_MAX_LIMIT_USDC = 50_000


class OracleError(Exception):
    """The reputation contract could not be read."""


class CreditOracle:
    """Reads an agent's raw credit figures from the reputation contract."""

    def __init__(self, rpc_url: str, reputation_address: str, timeout: int = 30, web3: Optional[Web3] = None):
        self.w3 = web3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(reputation_address), abi=REPUTATION_ABI
        )

    def fetch_credit_data(self, agent_address: str) -> Dict[str, int]:
        """
        Fetch reputation score, credit limit, collateral and rate for an agent.

        Args:
            agent_address: The agent's address

        Returns:
            Dict with reputation_score, credit_limit (USDC base units),
            collateral_percent and interest_rate_bps

        Raises:
            OracleError: If any contract call fails
        """
        agent = Web3.to_checksum_address(agent_address)
        fns = self.contract.functions
        try:
            return {
                "reputation_score": int(fns.getReputationScore(agent).call()),
                "credit_limit": int(fns.calculateCreditLimit(agent).call()),
                "collateral_percent": int(fns.calculateCollateralRequirement(agent).call()),
                "interest_rate_bps": int(fns.calculateInterestRate(agent).call()),
            }
        except (Web3Exception, RequestException, TimeoutError, ConnectionError) as e:
            logger.error(f"Error reading reputation contract for {agent}: {e}")
            raise OracleError(f"Failed to fetch on-chain credit data: {e}") from e


def classify_score(score: int) -> tuple:
    """Return (tier, recommendation) for a reputation score."""
    for minimum, tier, recommendation in CREDIT_TIERS:
        if score >= minimum:
            return tier, recommendation
    return CREDIT_TIERS[-1][1], CREDIT_TIERS[-1][2]


def build_assessment(agent_address: str, credit_data: Dict[str, int]) -> Dict[str, Any]:
    """
    Turn raw oracle figures into the credit assessment served to agents.

    Args:
        agent_address: The assessed agent
        credit_data: Output of CreditOracle.fetch_credit_data

    Returns:
        Dict matching the CreditAssessment response model
    """
    score = credit_data["reputation_score"]
    limit_raw = credit_data["credit_limit"]
    rate_bps = credit_data["interest_rate_bps"]
    collateral = credit_data["collateral_percent"]

    limit_usdc = limit_raw / USDC_UNIT
    tier, recommendation = classify_score(score)

    return {
        "agentAddress": agent_address,
        "creditScore": score,
        "tier": tier,
        "recommendation": recommendation,
        "creditLimit": f"{limit_usdc:,.2f} USDC",
        "creditLimitRaw": str(limit_raw),
        "interestRate": f"{rate_bps / 100:.2f}% APR",
        "interestRateBps": str(rate_bps),
        "collateralRequired": f"{collateral}%",
        "loanTerms": {
            "minDurationDays": 7,
            "maxDurationDays": 365,
            "autoApproveEligible": score >= AUTO_APPROVE_MIN_SCORE and limit_usdc <= AUTO_APPROVE_MAX_LIMIT_USDC,
        },
        "assessedAt": datetime.now(timezone.utc).isoformat(),
        "protocol": "Specular Protocol v3",
        "dataSource": "on-chain (ReputationManagerV3)",
    }


# Global oracle instance
_oracle: Optional[CreditOracle] = None
_oracle_lock = threading.Lock()


def get_credit_oracle() -> CreditOracle:
    """Get the global CreditOracle built from settings."""
    global _oracle

    if _oracle is None:
        with _oracle_lock:
            if _oracle is None:
                _oracle = CreditOracle(
                    rpc_url=settings.X402_RPC_URL,
                    reputation_address=settings.REPUTATION_CONTRACT_ADDRESS,
                    timeout=settings.X402_LEDGER_TIMEOUT_SECONDS,
                )

    return _oracle
