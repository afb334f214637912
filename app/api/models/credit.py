# app/api/models/credit.py
from pydantic import BaseModel, Field


class LoanTerms(BaseModel):
    """
    Loan term limits attached to a credit assessment.
    """
    minDurationDays: int
    maxDurationDays: int
    autoApproveEligible: bool


class CreditAssessment(BaseModel):
    """
    Credit assessment for an agent, served after the x402 fee is paid.
    Human-readable strings are paired with raw on-chain values.
    """
    agentAddress: str = Field(..., description="The assessed agent address.")
    creditScore: int = Field(..., description="Reputation score from the on-chain oracle.")
    tier: str = Field(..., description="PRIME, STANDARD, SUBPRIME, HIGH_RISK or UNRATED.")
    recommendation: str
    creditLimit: str = Field(..., description="Credit limit in USDC, formatted.")
    creditLimitRaw: str = Field(..., description="Credit limit in USDC base units.")
    interestRate: str = Field(..., description="Annual rate, formatted as a percentage.")
    interestRateBps: str = Field(..., description="Annual rate in basis points.")
    collateralRequired: str = Field(..., description="Required collateral as a percentage.")
    loanTerms: LoanTerms
    assessedAt: str = Field(..., description="ISO-8601 UTC timestamp of the assessment.")
    protocol: str
    dataSource: str

    class Config:
        json_schema_extra = {
            "example": {
                "agentAddress": "0x741c03c0d95d2c15e479ce1c7e69b3196d86fad7",
                "creditScore": 650,
                "tier": "STANDARD",
                "recommendation": "Approve - good credit history",
                "creditLimit": "5,000.00 USDC",
                "creditLimitRaw": "5000000000",
                "interestRate": "8.50% APR",
                "interestRateBps": "850",
                "collateralRequired": "50%",
                "loanTerms": {
                    "minDurationDays": 7,
                    "maxDurationDays": 365,
                    "autoApproveEligible": True
                },
                "assessedAt": "2026-01-15T12:00:00+00:00",
                "protocol": "Specular Protocol v3",
                "dataSource": "on-chain (ReputationManagerV3)"
            }
        }


class ErrorResponse(BaseModel):
    """
    Generic JSON error body.
    """
    error: str
