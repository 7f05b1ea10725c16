"""
KAAPAV WhatsApp Bot — Application Factory
"""

import logging
import time

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from kaapav import settings

# ── 1. Configure logging ──
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("kaapav-server")

_startup_time = time.time()

# ── 2. Create FastAPI app ──
app = FastAPI(title="KAAPAV WhatsApp Bot")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── 3. Register routers ──
from kaapav.routers import health, webhook  # noqa: E402

app.include_router(health.router)
app.include_router(webhook.router)


# ── 4. Lifecycle ──
@app.on_event("startup")
async def startup_event():
    logger.info("=" * 60)
    logger.info("KAAPAV WhatsApp Bot starting on port %s", settings.PORT)

    try:
        from kaapav.pipeline.setup import initialize_pipeline
        await initialize_pipeline()
        logger.info("Conversation pipeline initialized")
    except Exception as exc:
        logger.warning("Pipeline failed to start — webhook will return 503: %s", exc,
                       exc_info=True)

    logger.info("Total init time: %.2fs", time.time() - _startup_time)
    logger.info("=" * 60)


@app.on_event("shutdown")
async def shutdown_event():
    from kaapav.pipeline.setup import shutdown_pipeline
    await shutdown_pipeline()
