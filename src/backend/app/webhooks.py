"""Acuity webhook receiver.

One inbound notice becomes, in a single database transaction: an audit row
(``inbound_webhooks``, unique on the body hash), an upserted appointment, an
immutable canonical event and one pending delivery per platform. The audit row
is only committed together with everything derived from it, so a notice that
fails while fetching the appointment leaves nothing behind and the provider's
redelivery is processed normally instead of being treated as a duplicate.
"""

import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import parse_qs

import httpx
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models as dbm
from .config import Settings
from .delivery_queue import QueuePublishError, enqueue_delivery
from .errors import AuthError, ConfigError, ValidationError
from .integrations.booking_acuity import (
    acuity_verify_signature,
    appointment_snapshot,
    extract_intake_value,
    fetch_appointment_by_id,
)
from .metrics_counters import WEBHOOK_EVENTS
from .normalize import clean

logger = logging.getLogger(__name__)

SOURCE_ACUITY = "acuity"

# intake field setting -> (appointment column, JSON payload override key)
PASSTHROUGH_FIELDS = (
    ("acuity_field_va_attrib_id", "va_attrib", "vaAttrib"),
    ("acuity_field_gclid_id", "gclid", "gclid"),
    ("acuity_field_ttclid_id", "ttclid", "ttclid"),
    ("acuity_field_fbp_id", "fbp", "fbp"),
    ("acuity_field_fbc_id", "fbc", "fbc"),
)


@dataclass
class WebhookNotice:
    action: str
    appointment_id: str
    appointment_type_id: Optional[str] = None
    calendar_id: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None  # set for JSON bodies only


@dataclass
class WebhookResult:
    deduped: bool = False
    canonical_event_id: Optional[str] = None
    event_name: Optional[str] = None
    va_attrib: Optional[str] = None
    event_id: Optional[str] = None
    enqueued: bool = False

    def as_response(self) -> Dict[str, Any]:
        if self.deduped:
            return {"ok": True, "deduped": True}
        return {
            "ok": True,
            "canonicalEventId": self.canonical_event_id,
            "eventName": self.event_name,
            "vaAttrib": self.va_attrib,
            "eventId": self.event_id,
        }


def body_hash(raw: bytes) -> str:
    return hashlib.sha256(raw).hexdigest()


def _str_or_none(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def parse_notice(raw: bytes, content_type: Optional[str] = None) -> WebhookNotice:
    """Parse a form-encoded (Acuity's native format) or JSON webhook body."""
    text = raw.decode("utf-8", errors="replace")
    is_json = "json" in (content_type or "").lower() or text.lstrip().startswith("{")
    payload: Optional[Dict[str, Any]] = None
    if is_json:
        try:
            data = json.loads(text)
        except ValueError as exc:
            raise ValidationError("Invalid JSON") from exc
        if not isinstance(data, dict):
            raise ValidationError("Invalid JSON")
        payload = data
        fields: Dict[str, Any] = data
    else:
        fields = {k: v[0] for k, v in parse_qs(text, keep_blank_values=True).items() if v}
    appointment_id = _str_or_none(fields.get("id"))
    if not appointment_id:
        raise ValidationError("Missing id")
    return WebhookNotice(
        action=str(fields.get("action") or "unknown"),
        appointment_id=appointment_id,
        appointment_type_id=_str_or_none(fields.get("appointmentTypeID")),
        calendar_id=_str_or_none(fields.get("calendarID")),
        payload=payload,
    )


def classify_event(appt: Dict[str, Any], action: str, trial_type_ids) -> dbm.EventName:
    type_id = _str_or_none(appt.get("appointmentTypeID"))
    if not type_id or type_id not in trial_type_ids:
        return dbm.EventName.APPOINTMENT_UPDATED
    if appt.get("canceled") or action == "canceled":
        return dbm.EventName.TRIAL_CANCELED
    if action == "rescheduled":
        return dbm.EventName.TRIAL_RESCHEDULED
    return dbm.EventName.TRIAL_BOOKED


def extract_passthrough(settings: Settings, appt: Dict[str, Any], payload: Optional[Dict[str, Any]]) -> Dict[str, Optional[str]]:
    values: Dict[str, Optional[str]] = {}
    for setting_name, column, override_key in PASSTHROUGH_FIELDS:
        override = clean((payload or {}).get(override_key))
        values[column] = override or extract_intake_value(appt, getattr(settings, setting_name))
    return values


def upsert_appointment(
    db: Session,
    appt: Dict[str, Any],
    notice: WebhookNotice,
    passthrough: Dict[str, Optional[str]],
    now: int,
) -> dbm.Appointment:
    snap = appointment_snapshot(appt)
    appointment_id = str(appt.get("id") or notice.appointment_id)
    row = db.get(dbm.Appointment, appointment_id)
    if row is None:
        row = dbm.Appointment(id=appointment_id)
        db.add(row)
    row.appointment_type_id = snap["appointment_type_id"] or notice.appointment_type_id
    row.calendar_id = snap["calendar_id"] or notice.calendar_id
    row.status = snap["status"]
    row.datetime = snap["datetime"]
    row.email = snap["email"]
    row.phone = snap["phone"]
    row.first_name = snap["first_name"]
    row.last_name = snap["last_name"]
    # see "Pass-through appointment fields" in DESIGN.md
    for column, value in passthrough.items():
        if value:
            setattr(row, column, value)
    row.raw_json = json.dumps(appt, default=str)
    row.updated_at = now
    return row


def ensure_deliveries(db: Session, canonical_event_id: str) -> int:
    """One PENDING delivery per platform; existing pairs are left alone."""
    existing = set(
        db.execute(
            select(dbm.Delivery.platform).where(dbm.Delivery.canonical_event_id == canonical_event_id)
        ).scalars()
    )
    created = 0
    for platform in dbm.Platform:
        if platform.value in existing:
            continue
        db.add(dbm.Delivery(canonical_event_id=canonical_event_id, platform=platform.value))
        created += 1
    db.flush()
    return created


def verify_request(settings: Settings, raw: bytes, signature: Optional[str], dev_header: Optional[str]) -> bool:
    """Returns True when the dev bypass applied; raises on a bad signature."""
    if settings.acuity_webhook_dev_bypass and (dev_header or "").strip() == "1":
        return True
    secret = settings.acuity_webhook_signing_secret
    if not secret:
        raise ConfigError("Missing ACUITY_API_KEY")
    if not acuity_verify_signature(secret, raw, signature or ""):
        raise AuthError("Invalid signature")
    return False


async def _resolve_appointment(
    settings: Settings,
    notice: WebhookNotice,
    dev_bypass: bool,
    client: Optional[httpx.AsyncClient],
) -> Dict[str, Any]:
    payload = notice.payload or {}
    embedded = payload.get("appointment")
    if isinstance(embedded, dict):
        appt = dict(embedded)
    elif dev_bypass and notice.payload is not None:
        appt = dict(payload)
    else:
        return await fetch_appointment_by_id(settings, notice.appointment_id, client=client)
    appt.setdefault("id", notice.appointment_id)
    if notice.appointment_type_id:
        appt.setdefault("appointmentTypeID", notice.appointment_type_id)
    if notice.calendar_id:
        appt.setdefault("calendarID", notice.calendar_id)
    return appt


async def receive_acuity_webhook(
    db: Session,
    settings: Settings,
    raw: bytes,
    *,
    content_type: Optional[str] = None,
    signature: Optional[str] = None,
    dev_header: Optional[str] = None,
    now: Optional[int] = None,
    client: Optional[httpx.AsyncClient] = None,
    enqueue: Callable[[Settings, str], Awaitable[bool]] = enqueue_delivery,
) -> WebhookResult:
    now = now if now is not None else int(time.time())
    dev_bypass = verify_request(settings, raw, signature, dev_header)
    notice = parse_notice(raw, content_type)

    db.add(dbm.InboundWebhook(
        source=SOURCE_ACUITY,
        action=notice.action[:64],
        external_id=notice.appointment_id[:128],
        body_raw=raw.decode("utf-8", errors="replace"),
        body_hash=body_hash(raw),
        received_at=now,
    ))
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        WEBHOOK_EVENTS.labels(provider=SOURCE_ACUITY, status="deduped").inc()
        logger.info("acuity_webhook_deduped", extra={"appointment_id": notice.appointment_id})
        return WebhookResult(deduped=True)

    try:
        appt = await _resolve_appointment(settings, notice, dev_bypass, client)
        passthrough = extract_passthrough(settings, appt, notice.payload)
        appointment = upsert_appointment(db, appt, notice, passthrough, now)
        kind = classify_event(
            {**appt, "appointmentTypeID": appointment.appointment_type_id},
            notice.action,
            settings.acuity_trial_type_ids,
        )
        event = dbm.CanonicalEvent(
            name=kind.value,
            event_time=now,
            appointment_id=appointment.id,
            attribution_tok=appointment.va_attrib,
            value=None,
            currency="USD",
            event_id=appointment.id,
            created_at=now,
        )
        db.add(event)
        db.flush()
        ensure_deliveries(db, event.id)
        db.commit()
    except Exception:
        db.rollback()
        WEBHOOK_EVENTS.labels(provider=SOURCE_ACUITY, status="error").inc()
        raise

    WEBHOOK_EVENTS.labels(provider=SOURCE_ACUITY, status="ok").inc()
    result = WebhookResult(
        canonical_event_id=event.id,
        event_name=event.name,
        va_attrib=appointment.va_attrib,
        event_id=event.event_id,
    )
    logger.info(
        "acuity_webhook_processed",
        extra={"canonical_event_id": event.id, "event_name": event.name, "appointment_id": appointment.id},
    )
    try:
        result.enqueued = await enqueue(settings, event.id)
    except QueuePublishError:
        # event is committed; the requeue sweep picks it up later
        logger.exception("acuity_webhook_enqueue_failed", extra={"canonical_event_id": event.id})
    return result
