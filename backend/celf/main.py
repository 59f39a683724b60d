import logging
import os
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from celf.config import settings
from celf.core.exceptions import LedgerError
from celf.core.redis import close_redis, get_redis
from celf.routers import admin, mining, rewards, wallet
from celf.services.jobs import audit_job, auto_complete_job, purge_job

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

@asynccontextmanager
async def lifespan(app: FastAPI):
    await get_redis()
    scheduler.add_job(auto_complete_job, "interval", minutes=settings.MINING_AUTO_COMPLETE_INTERVAL_MINUTES)
    scheduler.add_job(audit_job, "cron", hour=settings.RECONCILE_AUDIT_HOUR, minute=0)
    scheduler.add_job(purge_job, "cron", hour=settings.RECONCILE_AUDIT_HOUR, minute=30)
    scheduler.start()
    logger.info("CELF ledger started")
    yield
    scheduler.shutdown()
    await close_redis()

app = FastAPI(title="CELF Wallet API", lifespan=lifespan)

_cors_origins_env = os.environ.get("CORS_ORIGINS", "")
_allowed_origins = [o.strip() for o in _cors_origins_env.split(",") if o.strip()] or ["http://localhost:3000"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})

app.include_router(wallet.router)
app.include_router(mining.router)
app.include_router(rewards.router)
app.include_router(admin.router)

@app.get("/health")
async def health():
    return {"status": "ok"}
