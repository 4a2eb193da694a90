"""
Realtime notifications. Thin wrapper around core.redis.
Typed row-change events so subscribers can refetch what changed.
"""

from ..core import redis as _redis


def batch_channel(batch_id: str) -> str:
    return f"batch:{batch_id}"


def job_channel(job_id: str) -> str:
    return f"job:{job_id}"


# ── Batch / output events ────────────────────────────────────────────

async def output_updated(batch_id: str, output_id: str, status: str, data: dict = None):
    await _redis.publish(
        batch_channel(batch_id),
        "output.updated",
        {"output_id": output_id, "status": status, **(data or {})},
    )


async def outputs_changed(batch_id: str, reason: str):
    """Bulk change (planned, cleared, requeued); subscribers refetch the list."""
    await _redis.publish(batch_channel(batch_id), "outputs.changed", {"reason": reason})


async def batch_status(batch_id: str, status: str):
    await _redis.publish(batch_channel(batch_id), "batch.status", {"status": status})


# ── Pipeline job events ──────────────────────────────────────────────

async def job_progress(job_id: str, data: dict):
    await _redis.publish(job_channel(job_id), "job.progress", data)


async def job_status(job_id: str, status: str):
    await _redis.publish(job_channel(job_id), "job.status", {"status": status})
