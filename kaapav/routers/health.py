from fastapi import APIRouter, HTTPException

from kaapav import settings

router = APIRouter()


@router.get("/")
async def root():
    return {
        "status": "KAAPAV WhatsApp Bot is Running",
        "endpoints": {
            "webhook": "/webhook",
            "health": "/health",
            "status": "/api/pipeline/status",
            "events": "/api/pipeline/events/{phone}",
        },
    }


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    from kaapav.pipeline.setup import get_pipeline

    pipeline = get_pipeline()
    return {
        "status": "healthy" if pipeline is not None else "degraded",
        "service": "kaapav-whatsapp",
        "port": settings.PORT,
        "pipeline": pipeline.health_check() if pipeline is not None else None,
    }


@router.get("/api/pipeline/status")
async def pipeline_status():
    from kaapav.pipeline.setup import get_dispatcher_registry, get_pipeline

    pipeline = get_pipeline()
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")
    registry = get_dispatcher_registry()
    return {
        "metrics": pipeline.get_metrics(),
        "health": pipeline.health_check(),
        "channels": registry.registered_channels if registry else [],
        "active_conversations": pipeline.sequencer.active_conversations,
    }


@router.get("/api/pipeline/events/{phone}")
async def pipeline_events(phone: str, limit: int = 50):
    from kaapav.pipeline.setup import get_pipeline

    pipeline = get_pipeline()
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")
    return {
        "phone": phone,
        "queued": pipeline.sequencer.queue_depth(phone),
        "events": pipeline.get_event_log(phone, limit),
    }
