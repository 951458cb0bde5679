import asyncio
import logging
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from marketplace.db.init_db import create_database
from marketplace.db.base import Base
from marketplace.db.session import engine, SessionLocal
from marketplace.core.config import settings
from marketplace.core.errors import MarketplaceError
from marketplace.api.deps import get_payment_processor
from marketplace.api.v1.router import api_router
from marketplace.services.payments import sweep_abandoned_orders
from marketplace.services.slot_ledger import cleanup_expired_locks

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def run_sweep() -> None:
    """Cancel abandoned unpaid orders and drop expired slot locks."""
    db = SessionLocal()
    try:
        now = datetime.now(timezone.utc)
        cancelled = sweep_abandoned_orders(db, now, get_payment_processor())
        expired = cleanup_expired_locks(db, now)
        if cancelled or expired:
            logger.info("Sweep cancelled %d order(s), removed %d expired lock(s).", cancelled, expired)
    finally:
        db.close()


async def _sweep_loop() -> None:
    """Background task: run the sweep every SWEEP_INTERVAL_SECONDS."""
    while True:
        try:
            await asyncio.to_thread(run_sweep)
        except Exception:
            logger.exception("Error during abandoned-order sweep.")
        await asyncio.sleep(settings.SWEEP_INTERVAL_SECONDS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: Ensure DB exists and create tables
    create_database()
    Base.metadata.create_all(bind=engine)

    # Run an immediate sweep, then keep running in the background
    sweep_task = asyncio.create_task(_sweep_loop())
    yield

    # Shutdown: cancel background task
    sweep_task.cancel()
    try:
        await sweep_task
    except asyncio.CancelledError:
        pass


from fastapi.middleware.cors import CORSMiddleware

app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)

# Set all CORS enabled origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.include_router(api_router, prefix=settings.API_V1_STR)

@app.get("/")
def read_root():
    return {"service": settings.PROJECT_NAME}
