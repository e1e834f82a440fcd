"""
Self-ping keep-alive.

Free-tier hosts idle a service that receives no traffic. In production the
service calls its own health endpoint every SELF_PING_INTERVAL_MINUTES.
Failures are logged as warnings and never raised.
"""

import logging
import time

import httpx
from apscheduler.triggers.interval import IntervalTrigger

from jv_backend.core.config import get_settings
from jv_backend.core.scheduler import register_job

logger = logging.getLogger(__name__)

JOB_ID_SELF_PING = "self_ping"
SELF_PING_INTERVAL_MINUTES = 13
SELF_PING_TIMEOUT_SECONDS = 8.0


def health_url(port: int) -> str:
    return f"http://127.0.0.1:{port}/api/health"


async def self_ping(client: httpx.AsyncClient | None = None) -> bool:
    """
    GET the local health endpoint once.

    Args:
        client: Optional client to reuse (tests pass one with a mock transport)

    Returns:
        True if the endpoint answered 200
    """
    url = health_url(get_settings().port)
    started_at = time.monotonic()
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=SELF_PING_TIMEOUT_SECONDS) as owned:
                response = await owned.get(url)
        else:
            response = await client.get(url, timeout=SELF_PING_TIMEOUT_SECONDS)
    except httpx.HTTPError as e:
        logger.warning(f"[SELF-PING] Failed: {e!r}")
        return False

    if response.status_code != 200:
        logger.warning(f"[SELF-PING] Non-200 response: {response.status_code}")
        return False

    duration_ms = round((time.monotonic() - started_at) * 1000)
    try:
        body = response.json()
    except ValueError:
        body = {}
    logger.info(
        f"[SELF-PING] OK ({duration_ms}ms) - status: {body.get('status')}, "
        f"uptime: {body.get('uptime')}"
    )
    return True


def register_self_ping_job() -> None:
    url = health_url(get_settings().port)
    register_job(
        job_id=JOB_ID_SELF_PING,
        func=self_ping,
        trigger=IntervalTrigger(minutes=SELF_PING_INTERVAL_MINUTES),
    )
    logger.info(
        f"[SELF-PING] Initializing self-ping to {url} every {SELF_PING_INTERVAL_MINUTES} minutes..."
    )
