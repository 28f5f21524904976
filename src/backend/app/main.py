import hmac
import json
import logging
import time as _time
from typing import Any, Dict, Optional

import httpx
from fastapi import Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.orm import Session

from . import models as dbm
from .config import Settings, get_settings
from .db import Base, engine, get_db
from .delivery import build_adapters, process_canonical_event
from .delivery_queue import verify_qstash_signature
from .errors import AppError, AuthError, NotFoundError, RateLimitedError, ValidationError
from .ingest import (
    ATTRIB_COOKIE,
    ATTRIB_COOKIE_MAX_AGE,
    SESSION_COOKIE,
    SESSION_COOKIE_MAX_AGE,
    VISITOR_COOKIE,
    VISITOR_COOKIE_MAX_AGE,
    client_ip,
    parse_ingest_body,
    record_touch,
)
from .integrations.conversions_base import ConversionInput, Skipped
from .rate_limit import check_and_increment
from .webhooks import receive_acuity_webhook

logger = logging.getLogger(__name__)

ADAPTER_TIMEOUT_SECONDS = 10.0

# path segment -> platform for the manual adapter check
TEST_PLATFORMS = {
    "meta": dbm.Platform.META,
    "google-ads": dbm.Platform.GOOGLE_ADS,
    "tiktok": dbm.Platform.TIKTOK,
    "hubspot": dbm.Platform.HUBSPOT,
}


def app_settings(request: Request) -> Settings:
    return request.app.state.settings


def _set_cookie(response: Response, settings: Settings, name: str, value: str, max_age: int, *, http_only: bool) -> None:
    # cookies are host-only over plain http so local testing works without the shared domain
    response.set_cookie(
        key=name,
        value=value,
        max_age=max_age,
        path="/",
        domain=settings.cookie_domain if settings.cookies_secure else None,
        secure=settings.cookies_secure,
        httponly=http_only,
        samesite="lax",
    )


def _init_sentry(settings: Settings) -> None:
    if not settings.sentry_dsn:
        return
    import sentry_sdk

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        traces_sample_rate=0.05,
        environment="production" if settings.cookies_secure else "development",
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    _init_sentry(settings)
    # Dev-only: local SQLite runs without Alembic
    if engine.url.drivername.startswith("sqlite"):
        Base.metadata.create_all(bind=engine)

    app = FastAPI(title="touchrelay", version="0.1.0")
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_credentials=True,
        allow_methods=["POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error("request_failed", extra={"path": request.url.path, "error": exc.code})
        return JSONResponse({"ok": False, "error": exc.code, "detail": exc.message[:400]}, status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled_error", extra={"path": request.url.path})
        return JSONResponse({"ok": False, "error": "internal_error"}, status_code=500)

    @app.options("/api/attrib/ingest", tags=["Attribution"])
    async def ingest_preflight() -> Dict[str, bool]:
        return {"ok": True}

    @app.post("/api/attrib/ingest", tags=["Attribution"])
    async def ingest_touch(
        request: Request,
        db: Session = Depends(get_db),
        settings: Settings = Depends(app_settings),
    ):
        ip = client_ip(request.headers)
        ok_rl, _ = check_and_increment(
            f"ingest:{ip or 'unknown'}",
            max_per_minute=settings.ingest_max_per_minute,
            redis_url=settings.redis_url,
        )
        if not ok_rl:
            raise RateLimitedError("Too many requests")
        body = parse_ingest_body(await request.body())
        ident = record_touch(
            db,
            body,
            dict(request.cookies),
            int(_time.time()),
            ip=ip,
            user_agent=request.headers.get("user-agent"),
        )
        response = JSONResponse({
            "ok": True,
            "vid": ident.visitor_id,
            "sid": ident.session_id,
            "attribTok": ident.attrib_token,
            "cookieDomain": settings.cookie_domain,
        })
        _set_cookie(response, settings, VISITOR_COOKIE, ident.visitor_id, VISITOR_COOKIE_MAX_AGE, http_only=True)
        _set_cookie(response, settings, SESSION_COOKIE, ident.session_id, SESSION_COOKIE_MAX_AGE, http_only=True)
        # readable so the booking page can copy it into the intake form
        _set_cookie(response, settings, ATTRIB_COOKIE, ident.attrib_token, ATTRIB_COOKIE_MAX_AGE, http_only=False)
        return response

    @app.post("/api/webhooks/acuity", tags=["Integrations"])
    async def webhook_acuity(
        request: Request,
        db: Session = Depends(get_db),
        settings: Settings = Depends(app_settings),
    ):
        raw = await request.body()
        result = await receive_acuity_webhook(
            db,
            settings,
            raw,
            content_type=request.headers.get("content-type"),
            signature=request.headers.get("x-acuity-signature"),
            dev_header=request.headers.get("x-acuity-dev"),
        )
        return result.as_response()

    @app.post("/api/qstash/deliver", tags=["Integrations"])
    async def qstash_deliver(
        request: Request,
        db: Session = Depends(get_db),
        settings: Settings = Depends(app_settings),
    ):
        raw = await request.body()
        if not verify_qstash_signature(settings, request.headers.get("upstash-signature"), raw):
            raise AuthError("Invalid QStash signature")
        try:
            payload = json.loads(raw.decode("utf-8"))
        except ValueError as exc:
            raise ValidationError("Invalid JSON") from exc
        canonical_event_id = payload.get("canonicalEventId") if isinstance(payload, dict) else None
        if not canonical_event_id or not isinstance(canonical_event_id, str):
            raise ValidationError("Missing canonicalEventId")
        async with httpx.AsyncClient(timeout=ADAPTER_TIMEOUT_SECONDS) as client:
            outcomes = await process_canonical_event(db, canonical_event_id, settings, build_adapters(settings, client))
        return {"ok": True, "results": [o.as_dict() for o in outcomes]}

    @app.post("/api/test/{platform}", tags=["Integrations"])
    async def test_platform(
        platform: str,
        request: Request,
        settings: Settings = Depends(app_settings),
    ):
        """Send a synthetic conversion through one adapter to check credentials."""
        expected = settings.outbound_test_secret
        auth = request.headers.get("authorization") or ""
        given = (
            (auth[7:] if auth.lower().startswith("bearer ") else "")
            or request.headers.get("x-test-secret")
            or request.query_params.get("secret")
            or ""
        )
        if not expected or not hmac.compare_digest(given, expected):
            raise AuthError("Invalid test secret")
        target = TEST_PLATFORMS.get(platform.lower())
        if target is None:
            raise NotFoundError(f"Unknown platform {platform}")
        raw = await request.body()
        try:
            overrides: Dict[str, Any] = json.loads(raw.decode("utf-8")) if raw.strip() else {}
        except ValueError as exc:
            raise ValidationError("Invalid JSON") from exc
        if not isinstance(overrides, dict):
            raise ValidationError("Invalid JSON")
        now = int(_time.time())
        conversion = ConversionInput(
            event_id=str(overrides.get("eventId") or f"test-{now}"),
            event_name=str(overrides.get("eventName") or dbm.EventName.TRIAL_BOOKED.value),
            event_time=now,
            event_source_url=overrides.get("url") or settings.default_event_source_url,
            email=overrides.get("email"),
            phone=overrides.get("phone"),
            gclid=overrides.get("gclid"),
            ttclid=overrides.get("ttclid"),
            fbc=overrides.get("fbc"),
            fbp=overrides.get("fbp"),
            hubspotutk=overrides.get("hutk"),
            ip=client_ip(request.headers),
            user_agent=request.headers.get("user-agent"),
        )
        async with httpx.AsyncClient(timeout=ADAPTER_TIMEOUT_SECONDS) as client:
            adapter = build_adapters(settings, client)[target.value]
            result = await adapter.send(conversion)
        if isinstance(result, Skipped):
            return {"ok": False, "skipped": True, "reason": result.reason}
        return {
            "ok": result.ok,
            "skipped": False,
            "status": result.status_code,
            "body": result.response_body,
            "requestBody": result.request_body,
        }

    @app.get("/metrics", tags=["Health"])
    def prometheus_metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
