"""Delivery job queue backed by Upstash QStash.

Publishing goes through the QStash REST API; QStash then POSTs the job back to
``/api/qstash/deliver`` with an ``Upstash-Signature`` JWT that we verify against
the current and next signing keys (both are valid during key rotation).
"""

import base64
import hashlib
import logging
import time
from typing import List, Optional

import httpx
import jwt
from sqlalchemy import select
from sqlalchemy.orm import Session

from . import models as dbm
from .config import Settings
from .metrics_counters import QUEUE_PUBLISHES

logger = logging.getLogger(__name__)

QSTASH_ISSUER = "Upstash"
PUBLISH_TIMEOUT_SECONDS = 5.0
CLOCK_TOLERANCE_SECONDS = 5


class QueuePublishError(Exception):
    pass


def _body_digest(body: bytes) -> str:
    return base64.urlsafe_b64encode(hashlib.sha256(body).digest()).decode("ascii").rstrip("=")


async def enqueue_delivery(
    settings: Settings,
    canonical_event_id: str,
    client: Optional[httpx.AsyncClient] = None,
) -> bool:
    """Publish one delivery job. Returns False when no QStash token is configured."""
    if not settings.qstash_token:
        QUEUE_PUBLISHES.labels(status="disabled").inc()
        return False
    url = f"{settings.qstash_url.rstrip('/')}/v2/publish/{settings.deliver_url}"
    headers = {"Authorization": f"Bearer {settings.qstash_token}", "Content-Type": "application/json"}
    payload = {"canonicalEventId": canonical_event_id}
    try:
        if client is not None:
            r = await client.post(url, json=payload, headers=headers, timeout=PUBLISH_TIMEOUT_SECONDS)
        else:
            async with httpx.AsyncClient(timeout=PUBLISH_TIMEOUT_SECONDS) as c:
                r = await c.post(url, json=payload, headers=headers)
    except httpx.HTTPError as exc:
        QUEUE_PUBLISHES.labels(status="error").inc()
        raise QueuePublishError(f"QStash publish failed: {exc.__class__.__name__}") from exc
    if r.status_code >= 400:
        QUEUE_PUBLISHES.labels(status="error").inc()
        raise QueuePublishError(f"QStash publish failed {r.status_code}: {r.text[:200]}")
    QUEUE_PUBLISHES.labels(status="ok").inc()
    return True


def _verify_with_key(key: str, signature: str, body: bytes, url: Optional[str]) -> bool:
    try:
        claims = jwt.decode(
            signature,
            key,
            algorithms=["HS256"],
            issuer=QSTASH_ISSUER,
            leeway=CLOCK_TOLERANCE_SECONDS,
            options={"require": ["iss", "sub", "exp", "nbf"], "verify_aud": False},
        )
    except jwt.PyJWTError:
        return False
    if url is not None and claims.get("sub") != url:
        return False
    claimed = str(claims.get("body") or "").rstrip("=")
    return claimed == _body_digest(body)


def verify_qstash_signature(settings: Settings, signature: Optional[str], body: bytes, url: Optional[str] = None) -> bool:
    if not signature:
        return False
    keys = [k for k in (settings.qstash_current_signing_key, settings.qstash_next_signing_key) if k]
    if not keys:
        logger.warning("qstash_signing_keys_missing")
        return False
    return any(_verify_with_key(key, signature, body, url) for key in keys)


def pending_canonical_event_ids(db: Session, older_than_seconds: int = 300, now: Optional[int] = None) -> List[str]:
    """Canonical events that still have retry-eligible deliveries."""
    cutoff = (now if now is not None else int(time.time())) - older_than_seconds
    stmt = (
        select(dbm.CanonicalEvent.id)
        .join(dbm.Delivery, dbm.Delivery.canonical_event_id == dbm.CanonicalEvent.id)
        .where(dbm.Delivery.status.in_([dbm.DeliveryStatus.PENDING.value, dbm.DeliveryStatus.FAILED.value]))
        .where(dbm.CanonicalEvent.created_at <= cutoff)
        .distinct()
        .order_by(dbm.CanonicalEvent.id)
    )
    return list(db.execute(stmt).scalars())


async def requeue_pending(
    db: Session,
    settings: Settings,
    older_than_seconds: int = 300,
    client: Optional[httpx.AsyncClient] = None,
    now: Optional[int] = None,
) -> int:
    """Re-publish jobs for events left behind by a failed enqueue or exhausted retries."""
    published = 0
    for event_id in pending_canonical_event_ids(db, older_than_seconds, now):
        try:
            if await enqueue_delivery(settings, event_id, client=client):
                published += 1
        except QueuePublishError:
            logger.exception("requeue_publish_failed", extra={"canonical_event_id": event_id})
    logger.info("requeue_pending_done", extra={"published": published})
    return published
