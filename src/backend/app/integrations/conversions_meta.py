import json
import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

from ..config import Settings
from ..models import Platform
from ..normalize import (
    clean,
    hash_email,
    hash_normalized,
    hash_phone,
    normalize_city,
    normalize_country,
    normalize_name,
    normalize_state,
    normalize_zip,
    to_unix_seconds,
)
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

DEFAULT_EVENT_NAMES = {
    "TRIAL_BOOKED": "SubmitApplication",
    "TRIAL_RESCHEDULED": "Schedule",
    "TRIAL_CANCELED": "Cancel",
    "APPOINTMENT_UPDATED": "Schedule",
}


def resolve_meta_event_name(settings: Settings, kind: Optional[str]) -> Optional[str]:
    """Meta event name for a canonical kind.

    Explicit mapping first, then the single fallback name. Built-in defaults only
    apply when no mapping is configured at all; a configured mapping that does not
    cover ``kind`` means the event is not sent.
    """
    mapping = settings.meta_event_names
    if kind and mapping.get(kind):
        return mapping[kind]
    fallback = (settings.meta_event_name_fallback or "").strip()
    if fallback:
        return fallback
    if mapping:
        return None
    return DEFAULT_EVENT_NAMES.get(kind or "", "Lead")


# ip and user agent alone are not enough for Meta to match a person
MATCH_KEYS = ("em", "ph", "fn", "ln", "ct", "st", "zp", "country", "external_id", "fbc", "fbp")


def build_user_data(settings: Settings, conversion: ConversionInput) -> Dict[str, Any]:
    user_data: Dict[str, Any] = {}
    hashed = {
        "em": hash_email(conversion.email),
        "ph": hash_phone(conversion.phone, settings.default_phone_country_code, e164=False),
        "fn": hash_normalized(conversion.first_name, normalize_name),
        "ln": hash_normalized(conversion.last_name, normalize_name),
        "ct": hash_normalized(conversion.city, normalize_city),
        "st": hash_normalized(conversion.state, normalize_state),
        "zp": hash_normalized(conversion.zip_code, normalize_zip),
        "country": hash_normalized(conversion.country, normalize_country),
        "external_id": hash_normalized(conversion.attribution_token, clean),
    }
    for key, value in hashed.items():
        if value:
            user_data[key] = [value]
    if conversion.ip:
        user_data["client_ip_address"] = conversion.ip
    if conversion.user_agent:
        user_data["client_user_agent"] = conversion.user_agent
    if conversion.fbc:
        user_data["fbc"] = conversion.fbc
    if conversion.fbp:
        user_data["fbp"] = conversion.fbp
    return user_data


def _data_processing_options(settings: Settings) -> Dict[str, Any]:
    if settings.meta_ldu_enabled:
        # Limited Data Use, scoped to US / California
        return {
            "data_processing_options": ["LDU"],
            "data_processing_options_country": 1,
            "data_processing_options_state": 1000,
        }
    return {"data_processing_options": []}


class MetaCapiAdapter(PlatformAdapter):
    platform = Platform.META

    async def send(self, conversion: ConversionInput) -> SendResult:
        s = self.settings
        reason = missing_reason({"META_PIXEL_ID": s.meta_pixel_id, "META_CAPI_ACCESS_TOKEN": s.meta_access_token})
        if reason:
            return Skipped(reason)
        event_name = resolve_meta_event_name(s, conversion.event_name)
        if not event_name:
            return Skipped("Missing META_CAPI_EVENT_NAME(S)")
        user_data = build_user_data(s, conversion)
        if not any(key in user_data for key in MATCH_KEYS):
            return Skipped("Missing user data")

        custom_data: Dict[str, Any] = {}
        if conversion.appointment_id:
            custom_data["appointment_id"] = conversion.appointment_id
        for key in ("utm_campaign", "utm_source"):
            if conversion.utm.get(key):
                custom_data[key] = conversion.utm[key]
        if conversion.value is not None:
            custom_data["value"] = conversion.value
        if conversion.currency:
            custom_data["currency"] = conversion.currency.upper()

        event = {
            "event_name": event_name,
            "event_time": to_unix_seconds(conversion.event_time),
            "event_id": conversion.event_id,
            "action_source": "website",
            "event_source_url": conversion.event_source_url,
            "user_data": user_data,
            "custom_data": custom_data,
        }
        event.update(_data_processing_options(s))
        payload: Dict[str, Any] = {"data": [event]}
        if s.meta_test_event_code:
            payload["test_event_code"] = s.meta_test_event_code
        request_body = json.dumps(payload)

        url = f"https://graph.facebook.com/{s.meta_api_version}/{quote(s.meta_pixel_id, safe='')}/events"
        status, text = await self._post(
            url,
            body=request_body,
            headers={"Content-Type": "application/json"},
            params={"access_token": s.meta_access_token},
        )
        parsed, body = parse_permissive(text)
        # success looks like {"events_received": 1, ...}; failures carry an "error" object
        has_error = isinstance(parsed, dict) and "error" in parsed
        ok = is_2xx(status) and not has_error
        if not ok:
            logger.info("meta_capi_rejected", extra={"event_id": conversion.event_id, "status": status})
        return Sent(ok=ok, status_code=status, response_body=body, request_body=request_body)
