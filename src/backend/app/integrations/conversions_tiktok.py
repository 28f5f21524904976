import json
import logging
from typing import Any, Dict, Optional

from ..config import Settings
from ..models import Platform
from ..normalize import clean, hash_email, hash_normalized, hash_phone, to_unix_seconds
from .conversions_base import (
    ConversionInput,
    PlatformAdapter,
    SendResult,
    Sent,
    Skipped,
    is_2xx,
    missing_reason,
    parse_permissive,
)

logger = logging.getLogger(__name__)

EVENTS_API_URL = "https://business-api.tiktok.com/open_api/v1.3/event/track/"

# Only bookings map by default; other kinds need TIKTOK_EVENT_NAMES
DEFAULT_EVENT_NAMES = {"TRIAL_BOOKED": "SubmitForm"}

# ip and user_agent ride along but never identify a person on their own
MATCH_KEYS = ("ttclid", "ttp", "email", "phone", "external_id")


def resolve_tiktok_event_name(settings: Settings, kind: Optional[str]) -> Optional[str]:
    if not kind:
        return None
    return settings.tiktok_event_names.get(kind) or DEFAULT_EVENT_NAMES.get(kind)


def _drop_empty(values: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in values.items() if v not in (None, "", {})}


class TikTokEventsAdapter(PlatformAdapter):
    platform = Platform.TIKTOK

    def build_event(self, conversion: ConversionInput, event_name: str) -> Dict[str, Any]:
        user = _drop_empty({
            "ttclid": conversion.ttclid,
            "ttp": conversion.ttp,
            "email": hash_email(conversion.email),
            "phone": hash_phone(conversion.phone, self.settings.default_phone_country_code, e164=True),
            "external_id": hash_normalized(conversion.attribution_token, clean),
            "ip": conversion.ip,
            "user_agent": conversion.user_agent,
        })
        properties = _drop_empty({
            "value": conversion.value,
            "currency": conversion.currency.upper() if conversion.currency else None,
        })
        page = _drop_empty({"url": conversion.event_source_url, "referrer": conversion.referrer})
        return _drop_empty({
            "event": event_name,
            "event_time": to_unix_seconds(conversion.event_time),
            "event_id": conversion.event_id,
            "user": user,
            "properties": properties,
            "page": page,
        })

    async def send(self, conversion: ConversionInput) -> SendResult:
        s = self.settings
        reason = missing_reason({"TIKTOK_PIXEL_CODE": s.tiktok_pixel_code, "TIKTOK_ACCESS_TOKEN": s.tiktok_access_token})
        if reason:
            return Skipped(reason)
        event_name = resolve_tiktok_event_name(s, conversion.event_name)
        if not event_name:
            return Skipped(f"No TikTok event mapped for {conversion.event_name}")
        event = self.build_event(conversion, event_name)
        if not any(key in event.get("user", {}) for key in MATCH_KEYS):
            return Skipped("Missing user data")

        payload: Dict[str, Any] = {
            "event_source": "web",
            "event_source_id": s.tiktok_pixel_code,
            "data": [event],
        }
        if s.tiktok_test_event_code:
            payload["test_event_code"] = s.tiktok_test_event_code
        request_body = json.dumps(payload)
        status, text = await self._post(
            EVENTS_API_URL,
            body=request_body,
            headers={"Access-Token": s.tiktok_access_token, "Content-Type": "application/json"},
        )
        parsed, body = parse_permissive(text)
        # TikTok answers 200 with a non-zero code for rejected events
        ok = is_2xx(status) and isinstance(parsed, dict) and parsed.get("code") == 0
        if not ok:
            logger.info("tiktok_event_rejected", extra={"event_id": conversion.event_id, "status": status})
        return Sent(ok=ok, status_code=status, response_body=body, request_body=request_body)
