"""ARQ job enqueueing utilities.

WHAT:
    Async helpers to route clicks, sales and feedback through the worker
    queue instead of calling the service in-process.

USAGE:
    from clickcredit.workers.arq_enqueue import enqueue_sale

    await enqueue_sale({"sale_id": "s1", "user_id": "u1", "amount": 4900, "sold_at": "..."})
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from arq import create_pool
from arq.connections import ArqRedis

from .arq_worker import QUEUE_NAME, get_redis_settings

logger = logging.getLogger(__name__)

# Global pool reference
_arq_pool: Optional[ArqRedis] = None


async def get_arq_pool() -> ArqRedis:
    """Get or create ARQ Redis pool."""
    global _arq_pool
    if _arq_pool is None:
        _arq_pool = await create_pool(get_redis_settings())
        logger.info("[ARQ-ENQUEUE] Redis pool created")
    return _arq_pool


async def reset_arq_pool() -> None:
    """Reset the ARQ pool (reconnection or tests)."""
    global _arq_pool
    if _arq_pool is not None:
        await _arq_pool.close()
        _arq_pool = None


async def _enqueue(function: str, *args: Any, job_id: Optional[str] = None) -> Dict[str, Any]:
    pool = await get_arq_pool()
    job = await pool.enqueue_job(function, *args, _job_id=job_id, _queue_name=QUEUE_NAME)
    if job:
        logger.info("[ARQ-ENQUEUE] Enqueued %s job %s", function, job.job_id)
        return {"job_id": job.job_id, "status": "enqueued"}
    logger.info("[ARQ-ENQUEUE] %s job %s already queued", function, job_id)
    return {"job_id": job_id, "status": "skipped_or_duplicate"}


async def enqueue_click(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Enqueue a click; the click id (when present) dedupes the job."""
    click_id = payload.get("click_id")
    return await _enqueue("ingest_click_job", payload, job_id=f"click:{click_id}" if click_id else None)


async def enqueue_sale(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Enqueue a sale for correlation; one job per sale id."""
    return await _enqueue("correlate_sale_job", payload, job_id=f"sale:{payload['sale_id']}")


async def enqueue_feedback(attribution_id: str, confirmed: bool) -> Dict[str, Any]:
    return await _enqueue("submit_feedback_job", attribution_id, confirmed)
