# app/main.py
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from app.core.config import settings
from app.api.endpoints import credit
from app.x402.middleware import X402Middleware
from app.x402.verifier import get_payment_verifier
import logging

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Load the used-nonce file before the first request is accepted
    if settings.X402_ENABLED and settings.X402_PAY_TO_ADDRESS:
        verifier = get_payment_verifier()
        logger.info(
            f"x402: Gateway ready on {verifier.network}, price {verifier.price_amount} "
            f"base units to {verifier.pay_to}"
        )
    elif settings.X402_ENABLED:
        logger.warning("x402: X402_PAY_TO_ADDRESS not configured; paid requests will fail with 500")
    yield


app = FastAPI(
    title=settings.PROJECT_NAME,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-PAYMENT"],
    expose_headers=["X-PAYMENT-RESPONSE", "X-402-Version"],
)
app.add_middleware(X402Middleware)

app.include_router(credit.router, prefix="/credit", tags=["credit"])


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.get("/", summary="Health Check", tags=["default"])
def read_root():
    """ Basic health check endpoint. """
    logger.info("Root endpoint '/' accessed.")
    return {"status": "ok", "message": f"Welcome to {settings.PROJECT_NAME}"}


@app.get("/health", summary="Liveness Probe", tags=["default"])
def health():
    return {"status": "ok", "x402Enabled": settings.X402_ENABLED, "network": settings.X402_NETWORK}
