"""Shared contract for conversion-forwarding platform adapters.

Each adapter turns one ``ConversionInput`` into a single vendor HTTP call and
reports back either ``Skipped`` (nothing was sent and nothing should be retried)
or ``Sent`` (the vendor was called; ``ok`` says whether it accepted the event).
Adapters never raise for vendor-side failures.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import httpx

from ..config import Settings
from ..models import Platform

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


@dataclass
class ConversionInput:
    event_id: str
    event_name: str
    event_time: int
    event_source_url: Optional[str] = None
    appointment_id: Optional[str] = None
    attribution_token: Optional[str] = None
    value: Optional[float] = None
    currency: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    referrer: Optional[str] = None
    gclid: Optional[str] = None
    gbraid: Optional[str] = None
    wbraid: Optional[str] = None
    ttclid: Optional[str] = None
    ttp: Optional[str] = None
    fbc: Optional[str] = None
    fbp: Optional[str] = None
    hubspotutk: Optional[str] = None
    utm: Dict[str, Optional[str]] = field(default_factory=dict)


@dataclass(frozen=True)
class Skipped:
    reason: str
    request_body: Optional[str] = None
    skipped: bool = True


@dataclass(frozen=True)
class Sent:
    ok: bool
    status_code: Optional[int]
    response_body: str
    request_body: str
    skipped: bool = False


SendResult = Union[Skipped, Sent]


def parse_permissive(text: str) -> Tuple[Optional[Any], str]:
    """Parsed JSON (or None) and the body to record; non-JSON passes through raw."""
    try:
        parsed = json.loads(text) if text else None
    except ValueError:
        return None, text
    if parsed is None:
        return None, text
    return parsed, json.dumps(parsed)


def missing_reason(required: Mapping[str, Optional[str]]) -> Optional[str]:
    missing = [name for name, value in required.items() if not value]
    return f"Missing env: {', '.join(missing)}" if missing else None


class PlatformAdapter(ABC):
    platform: Platform

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._client = client

    @abstractmethod
    async def send(self, conversion: ConversionInput) -> SendResult:
        ...

    async def _post(
        self,
        url: str,
        *,
        body: str,
        headers: Dict[str, str],
        params: Optional[Dict[str, str]] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> Tuple[Optional[int], str]:
        """POST a pre-serialized body; transport errors come back as ``(None, message)``."""
        try:
            if self._client is not None:
                r = await self._client.post(url, content=body, headers=headers, params=params, timeout=timeout)
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    r = await client.post(url, content=body, headers=headers, params=params)
        except httpx.HTTPError as exc:
            logger.warning(
                "outbound_transport_error",
                extra={"platform": self.platform.value, "error": exc.__class__.__name__},
            )
            return None, f"{exc.__class__.__name__}: {exc}"
        return r.status_code, r.text


def is_2xx(status: Optional[int]) -> bool:
    return status is not None and 200 <= status < 300
