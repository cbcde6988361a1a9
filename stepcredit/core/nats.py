from __future__ import annotations
import asyncio
import json
import logging
from typing import Sequence, Awaitable, Callable
from nats.aio.client import Client as NATS
from .config import get_settings

_settings = get_settings()
_nats = NATS()

logger = logging.getLogger(__name__)

PUBLISH_TIMEOUT_SECONDS = 2.0

async def nats_connect():
    if not _nats.is_connected:
        servers: Sequence[str] = [u.strip() for u in _settings.nats_urls.split(",") if u.strip()]
        await _nats.connect(servers=servers, connect_timeout=2, max_reconnect_attempts=5)

async def nats_close():
    if _nats.is_connected:
        await _nats.drain()

async def subscribe_steps(cb: Callable[[dict], Awaitable[None]]):
    """
    Subscribe to steps.recorded and invoke cb(evt_dict).
    evt example:
      {
        "user_id": "...",
        "steps": 12000,
        "date": "2025-10-23",
        "idempotency_key": "device-7:2025-10-23:12000"
      }
    """
    await nats_connect()
    async def _handler(msg):
        try:
            data = json.loads(msg.data)
        except ValueError:
            logger.warning("dropping malformed message on %s", msg.subject)
            return
        try:
            await cb(data)
        except Exception:
            # keep the subscription alive; the producer re-sends with the same idempotency key
            logger.exception("step event handler failed")
    await _nats.subscribe(_settings.nats_subject_steps, cb=_handler)

async def publish_event(subject: str, evt: dict) -> None:
    """Fire-and-forget publish; callers never wait on delivery and never fail because of it."""
    if not _settings.enable_nats_publisher:
        return
    try:
        await asyncio.wait_for(_publish(subject, evt), timeout=PUBLISH_TIMEOUT_SECONDS)
    except Exception as exc:
        logger.warning("publish to %s failed: %s", subject, exc)

async def _publish(subject: str, evt: dict) -> None:
    await nats_connect()
    await _nats.publish(subject, json.dumps(evt, default=str).encode("utf-8"))

_pending: set[asyncio.Task] = set()

def publish_nowait(subject: str, evt: dict) -> None:
    """Schedule publish_event on the running loop without awaiting it."""
    task = asyncio.get_running_loop().create_task(publish_event(subject, evt))
    _pending.add(task)
    task.add_done_callback(_pending.discard)
