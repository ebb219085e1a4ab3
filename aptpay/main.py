from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from .config import GZIP_MINIMUM_SIZE, PAYOUT_POLLER_ENABLED, UPI_WEBHOOK_SECRET
from .database.database import init_db, sessionLocal
from .routes import payment, rates, upi
from .services.payout import PayoutCoordinator, PayoutPoller
from .services.rates import RateConverter
from .services.upi import UpiPayoutClient
from .utils.aptos.client import AptosClient
from .utils.logging import get_logger
from .utils.upi import UpiQRParser

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()

    state = app.state
    poller: Optional[PayoutPoller] = None
    if state.start_poller:
        poller = PayoutPoller(
            session_factory=sessionLocal,
            coordinator_factory=lambda db: PayoutCoordinator(
                db,
                chain_client=state.chain_client,
                payout_client=state.payout_client,
                rate_converter=state.rate_converter,
                webhook_secret=state.webhook_secret,
            ),
        )
        poller.start()

    logger.info("AptPay backend started")
    try:
        yield
    finally:
        if poller is not None:
            await poller.stop()
        for client in (state.rate_converter, state.chain_client, state.payout_client):
            close = getattr(client, "close", None)
            if close is not None:
                await close()


def create_app(
    rate_converter: Optional[RateConverter] = None,
    chain_client=None,
    payout_client: Optional[UpiPayoutClient] = None,
    qr_parser: Optional[UpiQRParser] = None,
    webhook_secret: str = UPI_WEBHOOK_SECRET,
    start_poller: bool = PAYOUT_POLLER_ENABLED,
) -> FastAPI:
    app = FastAPI(title="AptPay", lifespan=lifespan)

    # Shared, process-wide components
    app.state.rate_converter = rate_converter or RateConverter()
    app.state.chain_client = chain_client or AptosClient()
    app.state.payout_client = payout_client or UpiPayoutClient()
    app.state.qr_parser = qr_parser or UpiQRParser()
    app.state.webhook_secret = webhook_secret
    app.state.start_poller = start_poller

    app.add_middleware(GZipMiddleware, minimum_size=GZIP_MINIMUM_SIZE)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(upi.router)
    app.include_router(payment.router)
    app.include_router(rates.router)

    @app.get("/health")
    async def health():
        return {"status": "OK", "message": "AptPay backend is running"}

    return app


app = create_app()
