import json
import logging
from typing import Dict, Optional

import pydantic
from pydantic import BaseModel
from sqlalchemy.orm import Session

from .errors import ValidationError
from .identity import Identity, Touch, merge_attribution, resolve_or_create
from .metrics_counters import INGEST_TOUCHES

logger = logging.getLogger(__name__)

VISITOR_COOKIE = "va_vid"
SESSION_COOKIE = "va_sid"
ATTRIB_COOKIE = "va_attrib"

VISITOR_COOKIE_MAX_AGE = 60 * 60 * 24 * 90
SESSION_COOKIE_MAX_AGE = 60 * 60 * 24 * 30
ATTRIB_COOKIE_MAX_AGE = 60 * 60 * 24 * 90

_CLICK_KEYS = ("gclid", "gbraid", "wbraid", "dclid", "fbclid", "fbp", "fbc", "ttclid", "msclkid")
_UTM_KEYS = ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content")


class IngestRequest(BaseModel):
    url: str
    referrer: Optional[str] = None
    utm: Optional[Dict[str, Optional[str]]] = None
    click: Optional[Dict[str, Optional[str]]] = None
    hubspotutk: Optional[str] = None

    def to_touch(self) -> Touch:
        params: Dict[str, Optional[str]] = {}
        utm = self.utm or {}
        click = self.click or {}
        for key in _UTM_KEYS:
            params[key] = utm.get(key)
        for key in _CLICK_KEYS:
            params[key] = click.get(key)
        params["hubspotutk"] = self.hubspotutk
        return Touch(url=self.url, referrer=self.referrer, params=params)


def parse_ingest_body(raw: bytes) -> IngestRequest:
    try:
        data = json.loads(raw.decode("utf-8") or "null")
    except ValueError as exc:
        INGEST_TOUCHES.labels(status="invalid").inc()
        raise ValidationError("Invalid JSON") from exc
    if not isinstance(data, dict):
        INGEST_TOUCHES.labels(status="invalid").inc()
        raise ValidationError("Invalid JSON")
    try:
        return IngestRequest.model_validate(data)
    except pydantic.ValidationError as exc:
        INGEST_TOUCHES.labels(status="invalid").inc()
        raise ValidationError("Missing or invalid url") from exc


def client_ip(headers) -> Optional[str]:
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return headers.get("x-real-ip")


def record_touch(
    db: Session,
    body: IngestRequest,
    cookies: Dict[str, str],
    now: int,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Identity:
    """Resolve the browser's identity and fold this touch into its attribution row."""
    ident = resolve_or_create(
        db,
        cookies.get(VISITOR_COOKIE),
        cookies.get(SESSION_COOKIE),
        cookies.get(ATTRIB_COOKIE),
        now,
        ip=ip,
        user_agent=user_agent,
    )
    merge_attribution(
        db,
        ident.attrib_token,
        now,
        body.to_touch(),
        visitor_id=ident.visitor_id,
        session_id=ident.session_id,
        ip=ip,
        user_agent=user_agent,
    )
    db.commit()
    INGEST_TOUCHES.labels(status="ok").inc()
    logger.debug("attribution_touch_recorded", extra={"visitor_id": ident.visitor_id, "session_id": ident.session_id})
    return ident
