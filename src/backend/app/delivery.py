"""Delivery worker: forward one canonical event to every platform that still needs it.

Rows in a terminal state (SUCCESS, SKIPPED) are never touched again, so a job can
be redelivered by the queue any number of times. Each row is attempted
independently; one platform failing or raising never stops the others.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

import httpx
from sqlalchemy.orm import Session

from . import models as dbm
from .config import Settings
from .errors import NotFoundError
from .integrations.conversions_base import ConversionInput, PlatformAdapter, SendResult, Skipped
from .integrations.conversions_google_ads import GoogleAdsAdapter
from .integrations.conversions_meta import MetaCapiAdapter
from .integrations.conversions_tiktok import TikTokEventsAdapter
from .integrations.crm_hubspot import HubSpotFormsAdapter
from .metrics_counters import DELIVERY_ATTEMPTS

logger = logging.getLogger(__name__)

ADAPTER_CLASSES = {
    dbm.Platform.META: MetaCapiAdapter,
    dbm.Platform.GOOGLE_ADS: GoogleAdsAdapter,
    dbm.Platform.TIKTOK: TikTokEventsAdapter,
    dbm.Platform.HUBSPOT: HubSpotFormsAdapter,
}


def build_adapters(settings: Settings, client: Optional[httpx.AsyncClient] = None) -> Dict[str, PlatformAdapter]:
    return {platform.value: cls(settings, client) for platform, cls in ADAPTER_CLASSES.items()}


@dataclass
class DeliveryOutcome:
    platform: str
    status: str
    attempts: int
    response_code: Optional[int] = None
    skipped_terminal: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "platform": self.platform,
            "status": self.status,
            "attempts": self.attempts,
            "responseCode": self.response_code,
            "alreadyTerminal": self.skipped_terminal,
        }


def build_conversion_input(
    settings: Settings,
    event: dbm.CanonicalEvent,
    appointment: Optional[dbm.Appointment],
    attribution: Optional[dbm.Attribution],
    session: Optional[dbm.VisitSession],
) -> ConversionInput:
    """Join the event with its appointment, attribution and session.

    Contact fields and click ids recorded on the appointment win over the
    attribution row's copies.
    """
    appt = appointment
    attrib = attribution

    def pick(name: str) -> Optional[str]:
        value = getattr(appt, name, None) if appt is not None else None
        return value or (getattr(attrib, name, None) if attrib is not None else None)

    utm = {}
    if attrib is not None:
        for key in ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content"):
            utm[key] = getattr(attrib, key)
    return ConversionInput(
        event_id=event.event_id,
        event_name=event.name,
        event_time=event.event_time,
        event_source_url=(attrib.last_url if attrib is not None else None) or settings.default_event_source_url,
        appointment_id=event.appointment_id,
        attribution_token=event.attribution_tok,
        value=event.value,
        currency=event.currency,
        email=appt.email if appt is not None else None,
        phone=appt.phone if appt is not None else None,
        first_name=appt.first_name if appt is not None else None,
        last_name=appt.last_name if appt is not None else None,
        ip=session.ip_first if session is not None else (attrib.ip if attrib is not None else None),
        user_agent=session.ua_first if session is not None else (attrib.user_agent if attrib is not None else None),
        referrer=attrib.last_referrer if attrib is not None else None,
        gclid=pick("gclid"),
        gbraid=attrib.gbraid if attrib is not None else None,
        wbraid=attrib.wbraid if attrib is not None else None,
        ttclid=pick("ttclid"),
        fbc=pick("fbc"),
        fbp=pick("fbp"),
        hubspotutk=attrib.hubspotutk if attrib is not None else None,
        utm=utm,
    )


def _record(row: dbm.Delivery, status: str, now: int, result: Optional[SendResult] = None, message: Optional[str] = None) -> None:
    row.status = status
    row.attempts = (row.attempts or 0) + 1
    row.last_attempt_at = now
    if message is not None:
        row.response_code = None
        row.response_body = message
        row.request_body = None
        return
    if isinstance(result, Skipped):
        row.response_code = None
        row.response_body = result.reason
        row.request_body = result.request_body
    elif result is not None:
        row.response_code = result.status_code
        row.response_body = result.response_body
        row.request_body = result.request_body


async def _attempt(row: dbm.Delivery, adapter: Optional[PlatformAdapter], conversion: ConversionInput, settings: Settings, now: int) -> None:
    if settings.mock_outbound:
        _record(row, dbm.DeliveryStatus.SUCCESS.value, now, message=f"mock_{row.platform.lower()}")
        return
    if adapter is None:
        _record(row, dbm.DeliveryStatus.SKIPPED.value, now, message=f"No adapter for {row.platform}")
        return
    try:
        result = await adapter.send(conversion)
    except Exception as exc:
        logger.exception(
            "delivery_adapter_error",
            extra={"platform": row.platform, "canonical_event_id": row.canonical_event_id},
        )
        _record(row, dbm.DeliveryStatus.FAILED.value, now, message=str(exc) or exc.__class__.__name__)
        return
    if isinstance(result, Skipped):
        status = dbm.DeliveryStatus.SKIPPED.value
    else:
        status = dbm.DeliveryStatus.SUCCESS.value if result.ok else dbm.DeliveryStatus.FAILED.value
    _record(row, status, now, result=result)


async def process_canonical_event(
    db: Session,
    canonical_event_id: str,
    settings: Settings,
    adapters: Mapping[str, PlatformAdapter],
    now: Optional[int] = None,
) -> List[DeliveryOutcome]:
    now = now if now is not None else int(time.time())
    event = db.get(dbm.CanonicalEvent, canonical_event_id)
    if event is None:
        raise NotFoundError("Missing canonical event")

    appointment = db.get(dbm.Appointment, event.appointment_id) if event.appointment_id else None
    attribution = db.get(dbm.Attribution, event.attribution_tok) if event.attribution_tok else None
    session = (
        db.get(dbm.VisitSession, attribution.session_id)
        if attribution is not None and attribution.session_id
        else None
    )
    conversion = build_conversion_input(settings, event, appointment, attribution, session)

    outcomes: List[DeliveryOutcome] = []
    for row in list(event.deliveries):
        if row.status in dbm.TERMINAL_STATUSES:
            outcomes.append(DeliveryOutcome(row.platform, row.status, row.attempts, row.response_code, skipped_terminal=True))
            continue
        await _attempt(row, adapters.get(row.platform), conversion, settings, now)
        # commit per row so a crash mid-job keeps the attempts already made
        db.commit()
        DELIVERY_ATTEMPTS.labels(platform=row.platform, status=row.status).inc()
        logger.info(
            "delivery_attempted",
            extra={
                "canonical_event_id": canonical_event_id,
                "platform": row.platform,
                "status": row.status,
                "attempts": row.attempts,
            },
        )
        outcomes.append(DeliveryOutcome(row.platform, row.status, row.attempts, row.response_code))
    return outcomes
