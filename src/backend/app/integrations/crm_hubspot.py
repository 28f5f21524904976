import json
import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import quote

from ..models import Platform
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

SUBMIT_URL = "https://api.hubapi.com/submissions/v3/integration/secure/submit/{portal}/{form}"


class HubSpotFormsAdapter(PlatformAdapter):
    """Secure form submission so the booking lands on the HubSpot contact timeline."""

    platform = Platform.HUBSPOT

    def form_guid_for(self, kind: Optional[str]) -> Optional[str]:
        mapping = self.settings.hubspot_form_guids
        if kind and mapping.get(kind):
            return mapping[kind]
        return self.settings.hubspot_trial_form_guid

    def build_submission(self, conversion: ConversionInput, submitted_at_ms: Optional[int] = None) -> Dict[str, Any]:
        fields = {
            "email": conversion.email,
            "acuity_appointment_id": conversion.appointment_id,
            "va_attrib": conversion.attribution_token,
            "utm_source": conversion.utm.get("utm_source"),
            "utm_medium": conversion.utm.get("utm_medium"),
            "utm_campaign": conversion.utm.get("utm_campaign"),
            "gclid": conversion.gclid,
            "ttclid": conversion.ttclid,
        }
        context = {
            "hutk": conversion.hubspotutk,
            "pageUri": conversion.event_source_url,
            "pageName": None,
            "ipAddress": conversion.ip,
        }
        return {
            "submittedAt": submitted_at_ms if submitted_at_ms is not None else int(time.time() * 1000),
            "fields": [{"name": k, "value": str(v)} for k, v in fields.items() if v not in (None, "")],
            "context": {k: v for k, v in context.items() if v is not None},
        }

    async def send(self, conversion: ConversionInput) -> SendResult:
        s = self.settings
        reason = missing_reason({
            "HUBSPOT_PORTAL_ID": s.hubspot_portal_id,
            "HUBSPOT_PRIVATE_APP_TOKEN": s.hubspot_private_app_token,
        })
        if reason:
            return Skipped(reason)
        form_guid = self.form_guid_for(conversion.event_name)
        if not form_guid:
            return Skipped("Missing HUBSPOT_TRIAL_FORM_GUID / HUBSPOT_FORM_GUIDS")
        if not (conversion.email or conversion.hubspotutk):
            # HubSpot cannot associate a submission without either
            return Skipped("Missing email and hutk")

        request_body = json.dumps(self.build_submission(conversion))
        url = SUBMIT_URL.format(portal=quote(s.hubspot_portal_id, safe=""), form=quote(form_guid, safe=""))
        status, text = await self._post(
            url,
            body=request_body,
            headers={"Authorization": f"Bearer {s.hubspot_private_app_token}", "Content-Type": "application/json"},
        )
        _, body = parse_permissive(text)
        ok = is_2xx(status)
        if not ok:
            logger.info("hubspot_submit_rejected", extra={"event_id": conversion.event_id, "status": status})
        return Sent(ok=ok, status_code=status, response_body=body, request_body=request_body)
