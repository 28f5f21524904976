import base64
import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

import httpx

from ..config import Settings
from ..errors import UpstreamFetchError
from ..normalize import clean, normalize_email_basic, normalize_phone_loose

logger = logging.getLogger(__name__)


def acuity_verify_signature(secret: str, payload: bytes, signature: str) -> bool:
    """
    Acuity signs webhooks with HMAC-SHA256 over the raw request body using the account API key.
    Many setups send the signature as base64, but some integrations use hex. Accept both.
    """
    if not (secret and signature):
        return False
    mac_raw = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()
    sig_b64 = base64.b64encode(mac_raw).decode("utf-8")
    sig_hex = mac_raw.hex()
    given = signature.strip()
    if hmac.compare_digest(sig_b64, given):
        return True
    return hmac.compare_digest(sig_hex, given.lower())


def _acuity_headers(settings: Settings) -> Dict[str, str]:
    raw = f"{settings.acuity_user_id}:{settings.acuity_api_key}".encode("utf-8")
    return {"Authorization": f"Basic {base64.b64encode(raw).decode('utf-8')}", "Accept": "application/json"}


async def fetch_appointment_by_id(
    settings: Settings,
    appointment_id: str,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    """GET one appointment with its intake form answers; read-only and safe to repeat."""
    if not (settings.acuity_user_id and settings.acuity_api_key):
        raise UpstreamFetchError("Missing ACUITY_USER_ID/ACUITY_API_KEY")
    url = f"{settings.acuity_base_url.rstrip('/')}/appointments/{appointment_id}"
    params = {"pastFormAnswers": "true"}
    try:
        if client is not None:
            r = await client.get(url, params=params, headers=_acuity_headers(settings), timeout=settings.upstream_timeout_seconds)
        else:
            async with httpx.AsyncClient(timeout=settings.upstream_timeout_seconds) as c:
                r = await c.get(url, params=params, headers=_acuity_headers(settings))
    except httpx.HTTPError as exc:
        logger.warning("acuity_fetch_transport_error", extra={"appointment_id": appointment_id, "error": str(exc)})
        raise UpstreamFetchError(f"Acuity fetch failed: {exc.__class__.__name__}") from exc
    if r.status_code >= 400:
        logger.warning("acuity_fetch_failed", extra={"appointment_id": appointment_id, "status": r.status_code})
        raise UpstreamFetchError(f"Acuity fetch failed {r.status_code}")
    try:
        data = r.json()
    except ValueError as exc:
        raise UpstreamFetchError("Acuity returned a non-JSON body") from exc
    if not isinstance(data, dict):
        raise UpstreamFetchError("Acuity returned an unexpected body")
    return data


def extract_intake_value(appt: Dict[str, Any], field_id: int) -> Optional[str]:
    """Value of intake form field ``field_id``; unset ids (0) are skipped."""
    if not field_id:
        return None
    for f in appt.get("fields") or []:
        if not isinstance(f, dict):
            continue
        try:
            fid = int(f.get("id") or f.get("fieldID") or 0)
        except (TypeError, ValueError):
            continue
        if fid == field_id:
            return clean(f.get("value"))
    # older payloads nest answers under forms[].values[]
    for form in appt.get("forms") or []:
        for f in (form or {}).get("values") or []:
            try:
                fid = int(f.get("fieldID") or 0)
            except (TypeError, ValueError):
                continue
            if fid == field_id:
                return clean(f.get("value"))
    return None


def _str_id(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def appointment_snapshot(appt: Dict[str, Any]) -> Dict[str, Any]:
    canceled = bool(appt.get("canceled"))
    return {
        "appointment_type_id": _str_id(appt.get("appointmentTypeID")),
        "calendar_id": _str_id(appt.get("calendarID")),
        "datetime": clean(appt.get("datetime")),
        "status": "canceled" if canceled else "scheduled",
        "email": normalize_email_basic(appt.get("email")),
        "phone": normalize_phone_loose(appt.get("phone")),
        "first_name": clean(appt.get("firstName")),
        "last_name": clean(appt.get("lastName")),
    }
