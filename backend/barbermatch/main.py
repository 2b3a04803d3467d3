import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from barbermatch.routers import auth, barbers, bookings, notifications, requests
from barbermatch.services.request_orchestrator import orchestrator

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _sweep_interval_seconds() -> float:
    raw = os.getenv("EXPIRY_SWEEP_INTERVAL_SECONDS", "0").strip()
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring invalid EXPIRY_SWEEP_INTERVAL_SECONDS=%r; sweep disabled", raw)
        return 0.0
    return value if value > 0 else 0.0


sweep_interval_seconds = _sweep_interval_seconds()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    orchestrator.expiry.start(sweep_interval_seconds)
    try:
        yield
    finally:
        orchestrator.expiry.stop()


app = FastAPI(title="BarberMatch API", version="0.1.0", lifespan=lifespan)

cors_origins = _parse_csv_env("CORS_ORIGINS", "*")
allow_any_origin = len(cors_origins) == 1 and cors_origins[0] == "*"

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    # Browsers reject wildcard CORS with credentials enabled.
    allow_credentials=not allow_any_origin,
    allow_methods=["*"],
    allow_headers=["*"],
)

trusted_hosts = _parse_csv_env("TRUSTED_HOSTS", "*")
if not (len(trusted_hosts) == 1 and trusted_hosts[0] == "*"):
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)

app.include_router(auth.router)
app.include_router(requests.router)
app.include_router(bookings.router)
app.include_router(barbers.router)
app.include_router(notifications.router)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/ready")
def ready():
    return {
        "status": "ready",
        "database": orchestrator.store.db_path,
        "expiry_sweep_enabled": sweep_interval_seconds > 0,
        "expiry_sweep_running": orchestrator.expiry.running,
    }
