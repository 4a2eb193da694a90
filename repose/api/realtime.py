"""
Realtime stream per batch (Server-Sent Events).

GET /v1/batches/{batch_id}/events

Events:
  data: {"type": "snapshot", "data": {...progress...}}
  data: {"type": "output.updated", "data": {"output_id": "...", "status": "complete", ...}}
  data: {"type": "outputs.changed", "data": {"reason": "planned"}}
  data: {"type": "batch.status", "data": {"status": "COMPLETE"}}

Without Redis only the snapshot is sent; clients fall back to polling.
"""

import json
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core import redis
from ..core.dependencies import get_db
from ..services import batches, realtime

logger = logging.getLogger(__name__)

realtime_router = APIRouter(tags=["realtime"])


@realtime_router.get("/batches/{batch_id}/events")
async def batch_events(batch_id: str, db: AsyncSession = Depends(get_db)):
    snapshot = await batches.batch_progress(db, batch_id)

    async def event_generator():
        yield f"data: {json.dumps({'type': 'snapshot', 'data': snapshot})}\n\n"
        try:
            async for event in redis.subscribe(realtime.batch_channel(batch_id)):
                yield f"data: {json.dumps(event, default=str)}\n\n"
        except Exception as e:
            logger.error("SSE stream error (batch=%s): %s", batch_id, e)
            yield f"data: {json.dumps({'type': 'error', 'content': str(e)})}\n\n"

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
