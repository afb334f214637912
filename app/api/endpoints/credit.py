# app/api/endpoints/credit.py
from fastapi import APIRouter, Path
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from eth_utils import is_address
from typing import Any
import logging

from app.services.credit_oracle import OracleError, build_assessment, get_credit_oracle
from app.api.models.credit import CreditAssessment, ErrorResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "/{agent_address}",
    response_model=CreditAssessment,
    responses={400: {"model": ErrorResponse}, 402: {"description": "x402 payment required"}, 500: {"model": ErrorResponse}},
    summary="Get Agent Credit Assessment"
)
async def get_credit_assessment(
    agent_address: str = Path(..., description="The agent's 0x address.")
) -> Any:
    """
    Return the on-chain credit assessment for an agent.

    Payment is enforced by the x402 middleware before this handler runs.

    Raises:
        400 if the address is malformed, 500 if the reputation contract cannot be read
    """
    if not is_address(agent_address):
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid agent address. Use /credit/0x..."}
        )

    try:
        credit_data = await run_in_threadpool(get_credit_oracle().fetch_credit_data, agent_address)
    except OracleError as e:
        logger.error(f"Credit data unavailable for {agent_address}: {e}")
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to fetch on-chain credit data"}
        )

    assessment = build_assessment(agent_address, credit_data)
    logger.info(f"Credit assessment served for {agent_address}: {assessment['tier']}")
    return assessment
