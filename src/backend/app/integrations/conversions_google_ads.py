"""Google Ads click conversion upload (REST ``uploadClickConversions``).

Authentication is the installed-app refresh-token flow. Access tokens are cached
in-process per credential set and refreshed at most once at a time: concurrent
sends that find the cache cold all await the same refresh.
"""

import asyncio
import hashlib
import json
import logging
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from ..models import Platform
from ..normalize import clean, format_offset_datetime, hash_email, hash_phone
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

OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
TOKEN_REFRESH_MARGIN_SECONDS = 60
_JOB_ID_LIMIT = 2 ** 31


class OAuthError(Exception):
    pass


class AccessTokenCache:
    """Single-flight access token cache keyed by a hash of the credential set."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._tokens: Dict[str, Tuple[str, float]] = {}
        self._inflight: Dict[str, "asyncio.Task[str]"] = {}

    @staticmethod
    def key_for(client_id: str, client_secret: str, refresh_token: str) -> str:
        raw = "\n".join([client_id, client_secret, refresh_token])
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def cached(self, key: str) -> Optional[str]:
        entry = self._tokens.get(key)
        if entry and entry[1] > self._clock() + TOKEN_REFRESH_MARGIN_SECONDS:
            return entry[0]
        return None

    async def get(self, key: str, refresh: Callable[[], Awaitable[Tuple[str, int]]]) -> str:
        token = self.cached(key)
        if token:
            return token
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._refresh(key, refresh))
            self._inflight[key] = task
        return await asyncio.shield(task)

    async def _refresh(self, key: str, refresh: Callable[[], Awaitable[Tuple[str, int]]]) -> str:
        try:
            token, expires_in = await refresh()
            self._tokens[key] = (token, self._clock() + expires_in)
            return token
        finally:
            self._inflight.pop(key, None)

    def clear(self) -> None:
        self._tokens.clear()


TOKEN_CACHE = AccessTokenCache()


def normalize_customer_id(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    digits = re.sub(r"\D+", "", value)
    return digits or None


def parse_job_id(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        parsed = int(value.strip())
    except ValueError:
        return None
    if parsed < 0 or parsed >= _JOB_ID_LIMIT:
        return None
    return parsed


def conversion_action_resource(customer_id: str, value: str) -> str:
    trimmed = value.strip()
    if "/" in trimmed:
        return trimmed
    return f"customers/{customer_id}/conversionActions/{re.sub(r'[^0-9]', '', trimmed)}"


def is_click_not_found_only(partial_failure_error: Any) -> bool:
    """True when every sub-error of a partial failure is CLICK_NOT_FOUND.

    An error with no itemized sub-errors is treated as a real failure.
    """
    if not isinstance(partial_failure_error, dict):
        return False
    details = partial_failure_error.get("details")
    if not isinstance(details, list):
        return False
    errors: List[Any] = []
    for detail in details:
        nested = detail.get("errors") if isinstance(detail, dict) else None
        if isinstance(nested, list):
            errors.extend(nested)
    if not errors:
        return False
    for err in errors:
        code = ((err or {}).get("errorCode") or {}).get("conversionUploadError") if isinstance(err, dict) else None
        if code != "CLICK_NOT_FOUND":
            return False
    return True


class GoogleAdsAdapter(PlatformAdapter):
    platform = Platform.GOOGLE_ADS

    def __init__(self, settings, client: Optional[httpx.AsyncClient] = None, token_cache: Optional[AccessTokenCache] = None):
        super().__init__(settings, client)
        self.token_cache = token_cache or TOKEN_CACHE

    def _resolve_action_id(self, kind: Optional[str]) -> Optional[str]:
        mapping = self.settings.google_ads_conversion_actions
        if kind and mapping.get(kind):
            return mapping[kind]
        return clean(self.settings.google_ads_conversion_action_id)

    def _user_identifiers(self, conversion: ConversionInput) -> List[Dict[str, str]]:
        identifiers: List[Dict[str, str]] = []
        hashed_email = hash_email(conversion.email)
        if hashed_email:
            identifiers.append({"userIdentifierSource": "FIRST_PARTY", "hashedEmail": hashed_email})
        hashed_phone = hash_phone(conversion.phone, self.settings.default_phone_country_code, e164=True)
        if hashed_phone:
            identifiers.append({"userIdentifierSource": "FIRST_PARTY", "hashedPhoneNumber": hashed_phone})
        return identifiers

    async def _request_token(self) -> Tuple[str, int]:
        s = self.settings
        data = {
            "client_id": s.google_ads_client_id,
            "client_secret": s.google_ads_client_secret,
            "refresh_token": s.google_ads_refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            if self._client is not None:
                r = await self._client.post(OAUTH_TOKEN_URL, data=data, timeout=10)
            else:
                async with httpx.AsyncClient(timeout=10) as client:
                    r = await client.post(OAUTH_TOKEN_URL, data=data)
        except httpx.HTTPError as exc:
            raise OAuthError(f"OAuth token request failed: {exc.__class__.__name__}") from exc
        if r.status_code >= 400:
            raise OAuthError(f"OAuth token request failed: {r.status_code} {r.text}")
        try:
            payload = r.json()
        except ValueError as exc:
            raise OAuthError("OAuth token response was not JSON") from exc
        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not token:
            raise OAuthError("OAuth token response missing access_token")
        expires_in = payload.get("expires_in")
        return token, int(expires_in) if isinstance(expires_in, (int, float)) else 3600

    async def access_token(self) -> str:
        s = self.settings
        key = AccessTokenCache.key_for(s.google_ads_client_id or "", s.google_ads_client_secret or "", s.google_ads_refresh_token or "")
        return await self.token_cache.get(key, self._request_token)

    def build_request(self, conversion: ConversionInput, customer_id: str, action_id: str, identifiers: List[Dict[str, str]]) -> Dict[str, Any]:
        s = self.settings
        item: Dict[str, Any] = {
            "conversionAction": conversion_action_resource(customer_id, action_id),
            "conversionDateTime": format_offset_datetime(
                conversion.event_time,
                s.google_ads_conversion_timezone,
                s.google_ads_conversion_timezone_offset,
            ),
            "conversionEnvironment": "WEB",
        }
        if conversion.value is not None:
            item["conversionValue"] = conversion.value
            if conversion.currency:
                item["currencyCode"] = conversion.currency
        item["orderId"] = conversion.event_id
        for name in ("gclid", "gbraid", "wbraid"):
            value = clean(getattr(conversion, name))
            if value:
                item[name] = value
        if identifiers:
            item["userIdentifiers"] = identifiers
        if conversion.ip:
            item["userIpAddress"] = conversion.ip
        item["consent"] = {"adUserData": "GRANTED", "adPersonalization": "GRANTED"}

        request: Dict[str, Any] = {"customerId": customer_id, "conversions": [item], "partialFailure": True}
        job_id = parse_job_id(s.google_ads_job_id)
        if job_id is not None:
            request["jobId"] = job_id
        if s.google_ads_validate_only:
            request["validateOnly"] = True
        return request

    async def send(self, conversion: ConversionInput) -> SendResult:
        s = self.settings
        customer_id = normalize_customer_id(s.google_ads_customer_id)
        reason = missing_reason({
            "GOOGLE_ADS_DEVELOPER_TOKEN": s.google_ads_developer_token,
            "GOOGLE_ADS_CLIENT_ID": s.google_ads_client_id,
            "GOOGLE_ADS_CLIENT_SECRET": s.google_ads_client_secret,
            "GOOGLE_ADS_REFRESH_TOKEN": s.google_ads_refresh_token,
            "GOOGLE_ADS_CUSTOMER_ID": customer_id,
        })
        if reason:
            return Skipped(reason)
        action_id = self._resolve_action_id(conversion.event_name)
        if not action_id:
            return Skipped("Missing GOOGLE_ADS_CONVERSION_ACTION_ID(S)")
        identifiers = self._user_identifiers(conversion)
        has_click = any(clean(v) for v in (conversion.gclid, conversion.gbraid, conversion.wbraid))
        if not has_click and not identifiers:
            return Skipped("Missing click IDs and user identifiers")

        request_body = json.dumps(self.build_request(conversion, customer_id, action_id, identifiers))
        try:
            token = await self.access_token()
        except OAuthError as exc:
            logger.warning("google_ads_oauth_failed", extra={"event_id": conversion.event_id})
            return Sent(ok=False, status_code=500, response_body=str(exc), request_body=request_body)

        headers = {
            "Authorization": f"Bearer {token}",
            "developer-token": s.google_ads_developer_token,
            "Content-Type": "application/json",
        }
        login_customer_id = normalize_customer_id(s.google_ads_login_customer_id)
        if login_customer_id:
            headers["login-customer-id"] = login_customer_id
        url = f"https://googleads.googleapis.com/{s.google_ads_api_version}/customers/{customer_id}:uploadClickConversions"
        status, text = await self._post(url, body=request_body, headers=headers)
        parsed, body = parse_permissive(text)
        partial = parsed.get("partialFailureError") if isinstance(parsed, dict) else None
        ok = is_2xx(status) and (not partial or is_click_not_found_only(partial))
        return Sent(ok=ok, status_code=status, response_body=body, request_body=request_body)
