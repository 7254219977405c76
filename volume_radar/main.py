"""
Volume Radar scan service
Standalone FastAPI application entry point

Run:
    uvicorn volume_radar.main:app --host 0.0.0.0 --port 8002
    python -m volume_radar.main
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from volume_radar import __version__
from volume_radar.config import settings
from volume_radar.routers import health, scan

# ── Logging ───────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
for _noisy in ("yfinance", "httpx", "httpcore", "urllib3"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


# ── Lifespan ──────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("=" * 60)
    logger.info(f"🚀 Volume Radar v{__version__} starting")
    logger.info(f"   Providers : {', '.join(settings.provider_names)}")
    logger.info(f"   RVOL      : >= {settings.MIN_RVOL} | top {settings.TOP_N}")
    logger.info(f"   Twelve Data supplement: {'on' if settings.TWELVE_DATA_API_KEY else 'off'}")
    logger.info("=" * 60)
    if not settings.TWELVE_DATA_API_KEY:
        logger.warning("⚠️ TWELVE_DATA_API_KEY not set, twelvedata provider and indicator supplement disabled")

    yield

    logger.info("✅ Volume Radar stopped")


# ── Application ───────────────────────────────────────────
app = FastAPI(
    title="Volume Radar",
    description=(
        "Once-per-run watchlist scanner:\n"
        "- 📊 relative volume (RVOL) ranking\n"
        "- 🎯 consolidation setup detection (SMA21 / period high / base length)\n"
        "- 🔇 volume without price movement\n\n"
        "**Layers**\n"
        "```\n"
        "Acquisition     ← Yahoo chart / yfinance / Twelve Data with retry\n"
        "Processing      ← bar normalisation, RVOL\n"
        "Analysis        ← SMA / Wilder RSI / peak & base metrics\n"
        "Classification  ← full / close / none setup tiers\n"
        "Ranking         ← filter, tie-break ranking, top N\n"
        "```"
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_process_time(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = f"{(time.time() - start) * 1000:.1f}ms"
    return response


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "internal error", "message": str(exc)},
    )


app.include_router(health.router)
app.include_router(scan.router)


@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "Volume Radar",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
        "scan": "/api/scan",
    }


if __name__ == "__main__":
    uvicorn.run(
        "volume_radar.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
