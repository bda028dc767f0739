"""FastAPI entry point for the referral settlement service."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response

from settlement import __version__, settings
from settlement.database import SessionLocal, init_db
from settlement.otp import InMemoryOtpStore, OtpSigner, OtpStore, SqlOtpStore
from settlement.providers import LoggingGateway
from settlement.routers import agents, payments, reconciliation, referrals, tiers

logger = logging.getLogger(__name__)


def configure_logging(level: str = settings.LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_otp_store() -> OtpStore:
    if settings.OTP_STORE == "memory":
        return InMemoryOtpStore()
    return SqlOtpStore(SessionLocal)


async def sweep_expired_codes(signer: OtpSigner, interval_seconds: int) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(signer.sweep)
        except Exception:
            logger.exception("Signing code sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    init_db()
    app.state.signer = OtpSigner(build_otp_store())
    app.state.payout_gateway = LoggingGateway()
    sweeper = asyncio.create_task(sweep_expired_codes(app.state.signer, settings.OTP_SWEEP_INTERVAL_SECONDS))
    logger.info("Referral settlement %s started", __version__)
    try:
        yield
    finally:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper


app = FastAPI(title="Referral Settlement", version=__version__, lifespan=lifespan)

app.include_router(reconciliation.router)
app.include_router(payments.router)
app.include_router(agents.router)
app.include_router(referrals.router)
app.include_router(tiers.router)


@app.get("/health")
def health() -> Response:
    """Simple health endpoint for load balancers and platform checks."""
    return Response(content=f'{{"status":"ok","version":"{__version__}"}}', media_type="application/json")
