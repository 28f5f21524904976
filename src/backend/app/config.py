import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, FrozenSet, Optional, Tuple

from dotenv import load_dotenv


# Local development reads the project .env; real environment always wins
load_dotenv(dotenv_path=os.getenv("ENV_FILE", ".env"), override=False)


def _env(name: str, default: str = "") -> str:
    return (os.getenv(name, default) or "").strip()


def _env_opt(name: str) -> Optional[str]:
    v = _env(name)
    return v or None


def _env_int(name: str, default: int = 0) -> int:
    try:
        return int(_env(name, str(default)) or default)
    except ValueError:
        return default


def _truthy(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes"}


def _csv(value: str) -> Tuple[str, ...]:
    return tuple(s.strip() for s in (value or "").split(",") if s.strip())


def parse_event_name_map(value: Optional[str]) -> Dict[str, str]:
    """Parse ``KIND=name,KIND2=name2`` mappings; malformed pairs are ignored."""
    mapping: Dict[str, str] = {}
    for pair in (value or "").split(","):
        if "=" not in pair:
            continue
        kind, _, target = pair.partition("=")
        kind, target = kind.strip(), target.strip()
        if kind and target:
            mapping[kind] = target
    return mapping


@dataclass(frozen=True)
class Settings:
    """Immutable runtime configuration, built once at startup."""

    public_base_url: str = ""
    cookie_domain: str = ".virtu.academy"
    cookies_secure: bool = True
    allowed_origins: Tuple[str, ...] = ()
    default_event_source_url: str = "https://virtu.academy"
    outbound_mode: str = "live"
    outbound_test_secret: Optional[str] = None
    ingest_max_per_minute: int = 120

    # Acuity
    acuity_user_id: Optional[str] = None
    acuity_api_key: Optional[str] = None
    acuity_webhook_secret: Optional[str] = None
    acuity_base_url: str = "https://acuityscheduling.com/api/v1"
    acuity_webhook_dev_bypass: bool = False
    acuity_trial_type_ids: FrozenSet[str] = frozenset()
    acuity_field_va_attrib_id: int = 0
    acuity_field_gclid_id: int = 0
    acuity_field_ttclid_id: int = 0
    acuity_field_fbp_id: int = 0
    acuity_field_fbc_id: int = 0
    upstream_timeout_seconds: float = 5.0

    # QStash
    qstash_url: str = "https://qstash.upstash.io"
    qstash_token: Optional[str] = None
    qstash_current_signing_key: Optional[str] = None
    qstash_next_signing_key: Optional[str] = None

    # Meta CAPI
    meta_pixel_id: Optional[str] = None
    meta_access_token: Optional[str] = None
    meta_test_event_code: Optional[str] = None
    meta_api_version: str = "v24.0"
    meta_event_names: Dict[str, str] = field(default_factory=dict)
    meta_event_name_fallback: Optional[str] = None
    meta_ldu_enabled: bool = False

    # Google Ads
    google_ads_developer_token: Optional[str] = None
    google_ads_client_id: Optional[str] = None
    google_ads_client_secret: Optional[str] = None
    google_ads_refresh_token: Optional[str] = None
    google_ads_customer_id: Optional[str] = None
    google_ads_login_customer_id: Optional[str] = None
    google_ads_conversion_actions: Dict[str, str] = field(default_factory=dict)
    google_ads_conversion_action_id: Optional[str] = None
    google_ads_conversion_timezone: Optional[str] = None
    google_ads_conversion_timezone_offset: Optional[str] = None
    google_ads_job_id: Optional[str] = None
    google_ads_validate_only: bool = False
    google_ads_api_version: str = "v22"
    default_phone_country_code: Optional[str] = None

    # TikTok
    tiktok_pixel_code: Optional[str] = None
    tiktok_access_token: Optional[str] = None
    tiktok_test_event_code: Optional[str] = None
    tiktok_event_names: Dict[str, str] = field(default_factory=dict)

    # HubSpot
    hubspot_portal_id: Optional[str] = None
    hubspot_private_app_token: Optional[str] = None
    hubspot_trial_form_guid: Optional[str] = None
    hubspot_form_guids: Dict[str, str] = field(default_factory=dict)

    # Observability
    sentry_dsn: Optional[str] = None
    redis_url: Optional[str] = None

    @property
    def mock_outbound(self) -> bool:
        return self.outbound_mode == "mock"

    @property
    def acuity_webhook_signing_secret(self) -> Optional[str]:
        # Acuity signs with the account API key unless a dedicated secret is set
        return self.acuity_webhook_secret or self.acuity_api_key

    @property
    def deliver_url(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/api/qstash/deliver"


def load_settings() -> Settings:
    trial_ids = set(_csv(_env("ACUITY_TRIAL_APPOINTMENT_TYPE_IDS")))
    single = _env("ACUITY_TRIAL_APPOINTMENT_TYPE_ID")
    if single:
        trial_ids.add(single)
    return Settings(
        public_base_url=_env("PUBLIC_BASE_URL"),
        cookie_domain=_env("COOKIE_DOMAIN", ".virtu.academy"),
        cookies_secure=_env("ENVIRONMENT", "production") == "production",
        allowed_origins=_csv(_env("ALLOWED_ORIGINS")),
        default_event_source_url=_env("DEFAULT_EVENT_SOURCE_URL", "https://virtu.academy"),
        outbound_mode=_env("OUTBOUND_MODE", "live").lower(),
        outbound_test_secret=_env_opt("OUTBOUND_TEST_SECRET"),
        ingest_max_per_minute=_env_int("INGEST_MAX_PER_MINUTE", 120),
        acuity_user_id=_env_opt("ACUITY_USER_ID"),
        acuity_api_key=_env_opt("ACUITY_API_KEY"),
        acuity_webhook_secret=_env_opt("ACUITY_WEBHOOK_SECRET"),
        acuity_base_url=_env("ACUITY_BASE_URL", "https://acuityscheduling.com/api/v1"),
        acuity_webhook_dev_bypass=_truthy(_env("ACUITY_WEBHOOK_DEV_BYPASS")),
        acuity_trial_type_ids=frozenset(trial_ids),
        acuity_field_va_attrib_id=_env_int("ACUITY_FIELD_VA_ATTRIB_ID"),
        acuity_field_gclid_id=_env_int("ACUITY_FIELD_GCLID_ID"),
        acuity_field_ttclid_id=_env_int("ACUITY_FIELD_TTCLID_ID"),
        acuity_field_fbp_id=_env_int("ACUITY_FIELD_FBP_ID"),
        acuity_field_fbc_id=_env_int("ACUITY_FIELD_FBC_ID"),
        upstream_timeout_seconds=float(_env("UPSTREAM_TIMEOUT_SECONDS", "5") or 5),
        qstash_url=_env("QSTASH_URL", "https://qstash.upstash.io"),
        qstash_token=_env_opt("QSTASH_TOKEN"),
        qstash_current_signing_key=_env_opt("QSTASH_CURRENT_SIGNING_KEY"),
        qstash_next_signing_key=_env_opt("QSTASH_NEXT_SIGNING_KEY"),
        meta_pixel_id=_env_opt("META_PIXEL_ID"),
        meta_access_token=_env_opt("META_CAPI_ACCESS_TOKEN"),
        meta_test_event_code=_env_opt("META_CAPI_TEST_EVENT_CODE"),
        meta_api_version=_env("META_CAPI_API_VERSION", "v24.0"),
        meta_event_names=parse_event_name_map(_env("META_CAPI_EVENT_NAMES")),
        meta_event_name_fallback=_env_opt("META_CAPI_EVENT_NAME"),
        meta_ldu_enabled=_truthy(_env("META_CAPI_LDU_ENABLED")),
        google_ads_developer_token=_env_opt("GOOGLE_ADS_DEVELOPER_TOKEN"),
        google_ads_client_id=_env_opt("GOOGLE_ADS_CLIENT_ID"),
        google_ads_client_secret=_env_opt("GOOGLE_ADS_CLIENT_SECRET"),
        google_ads_refresh_token=_env_opt("GOOGLE_ADS_REFRESH_TOKEN"),
        google_ads_customer_id=_env_opt("GOOGLE_ADS_CUSTOMER_ID"),
        google_ads_login_customer_id=_env_opt("GOOGLE_ADS_LOGIN_CUSTOMER_ID"),
        google_ads_conversion_actions=parse_event_name_map(_env("GOOGLE_ADS_CONVERSION_ACTIONS")),
        google_ads_conversion_action_id=_env_opt("GOOGLE_ADS_CONVERSION_ACTION_ID"),
        google_ads_conversion_timezone=_env_opt("GOOGLE_ADS_CONVERSION_TIMEZONE"),
        google_ads_conversion_timezone_offset=_env_opt("GOOGLE_ADS_CONVERSION_TIMEZONE_OFFSET"),
        google_ads_job_id=_env_opt("GOOGLE_ADS_JOB_ID"),
        google_ads_validate_only=_truthy(_env("GOOGLE_ADS_VALIDATE_ONLY")),
        google_ads_api_version=_env("GOOGLE_ADS_API_VERSION", "v22"),
        default_phone_country_code=_env_opt("DEFAULT_PHONE_COUNTRY_CODE")
        or _env_opt("GOOGLE_ADS_DEFAULT_PHONE_COUNTRY_CODE"),
        tiktok_pixel_code=_env_opt("TIKTOK_PIXEL_CODE"),
        tiktok_access_token=_env_opt("TIKTOK_ACCESS_TOKEN"),
        tiktok_test_event_code=_env_opt("TIKTOK_TEST_EVENT_CODE"),
        tiktok_event_names=parse_event_name_map(_env("TIKTOK_EVENT_NAMES")),
        hubspot_portal_id=_env_opt("HUBSPOT_PORTAL_ID"),
        hubspot_private_app_token=_env_opt("HUBSPOT_PRIVATE_APP_TOKEN"),
        hubspot_trial_form_guid=_env_opt("HUBSPOT_TRIAL_FORM_GUID"),
        hubspot_form_guids=parse_event_name_map(_env("HUBSPOT_FORM_GUIDS")),
        sentry_dsn=_env_opt("SENTRY_DSN"),
        redis_url=_env_opt("REDIS_URL"),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
