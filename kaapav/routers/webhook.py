"""
WhatsApp Webhook — entry point for Meta's Cloud API callbacks.

Endpoints:
  GET  /webhook   Subscription verification (hub.challenge echo)
  POST /webhook   Message and status deliveries

POST answers 200 as soon as the body is parsed; processing continues in
a background task.  Meta redelivers anything not acknowledged quickly,
and the Dedup Gate absorbs those redeliveries.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import PlainTextResponse

from kaapav import settings
from kaapav.pipeline.channels import IngestBatch

logger = logging.getLogger("kaapav.webhook")

router = APIRouter(tags=["webhook"])

# Strong references to background tasks to prevent GC before completion
_background_tasks: set[asyncio.Task] = set()


@router.get("/webhook", response_class=PlainTextResponse)
async def verify_webhook(
    hub_mode: str = Query("", alias="hub.mode"),
    hub_verify_token: str = Query("", alias="hub.verify_token"),
    hub_challenge: str = Query("", alias="hub.challenge"),
):
    if hub_mode == "subscribe" and hub_verify_token == settings.WHATSAPP_VERIFY_TOKEN:
        logger.info("Webhook verified")
        return PlainTextResponse(hub_challenge)
    logger.warning("Webhook verification rejected (mode=%s)", hub_mode)
    raise HTTPException(status_code=403, detail="Verification failed")


@router.post("/webhook")
async def receive_webhook(request_body: dict[str, Any]):
    from kaapav.pipeline.setup import get_ingest, get_pipeline

    pipeline = get_pipeline()
    ingest = get_ingest()
    if pipeline is None or ingest is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")

    try:
        batch = ingest.parse(request_body)
    except Exception as exc:
        # Acknowledge anyway so Meta does not redeliver a body we cannot read
        logger.error("Webhook parse error: %s", exc, exc_info=True)
        return {"status": "ignored"}

    if batch.events or batch.statuses:
        task = asyncio.create_task(_process_in_background(pipeline, batch))
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)

    return {
        "status": "received",
        "messages": len(batch.events),
        "statuses": len(batch.statuses),
    }


async def _process_in_background(pipeline, batch: IngestBatch) -> None:
    try:
        outcomes = await pipeline.process_batch(batch)
        logger.info("Webhook batch processed: %s", [o.value for o in outcomes])
    except Exception as exc:
        logger.error("Error processing webhook batch: %s", exc, exc_info=True)
