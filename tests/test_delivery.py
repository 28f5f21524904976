import asyncio
import base64
import hashlib
import json
import time

import jwt
import pytest
from fastapi.testclient import TestClient

from src.backend.app import models as dbm
from src.backend.app.db import SessionLocal
from src.backend.app.delivery import build_conversion_input, process_canonical_event
from src.backend.app.errors import NotFoundError
from src.backend.app.integrations.conversions_base import Sent, Skipped
from src.backend.app.main import create_app
from src.backend.app.webhooks import ensure_deliveries

T0 = 1_700_000_000


class FakeAdapter:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    async def send(self, conversion):
        self.calls.append(conversion)
        if self.error is not None:
            raise self.error
        return self.result


def _ok():
    return Sent(ok=True, status_code=200, response_body='{"events_received": 1}', request_body="{}")


def _adapters(**overrides):
    adapters = {p.value: FakeAdapter(result=_ok()) for p in dbm.Platform}
    adapters.update(overrides)
    return adapters


def _seed_event(db, *, with_attribution=True) -> str:
    tok = None
    if with_attribution:
        db.add(dbm.Visitor(id="v1", first_seen_at=T0, last_seen_at=T0))
        db.add(dbm.VisitSession(id="s1", visitor_id="v1", first_seen_at=T0, last_seen_at=T0, ip_first="1.1.1.1", ua_first="UA-session"))
        db.add(dbm.Attribution(
            token="tok-1",
            visitor_id="v1",
            session_id="s1",
            first_touch_at=T0,
            last_touch_at=T0,
            last_url="https://www.example.test/book",
            ip="2.2.2.2",
            user_agent="UA-attrib",
            utm_source="google",
            gclid="G-attrib",
            ttclid="TT-attrib",
            hubspotutk="hutk-1",
        ))
        tok = "tok-1"
    db.add(dbm.Appointment(id="9001", email="ada@example.com", phone="4155550100", first_name="Ada", gclid="G-appt", va_attrib=tok))
    event = dbm.CanonicalEvent(
        name=dbm.EventName.TRIAL_BOOKED.value,
        event_time=T0,
        appointment_id="9001",
        attribution_tok=tok,
        currency="USD",
        event_id="9001",
        created_at=T0,
    )
    db.add(event)
    db.flush()
    ensure_deliveries(db, event.id)
    db.commit()
    return event.id


def _statuses(db, event_id):
    db.expire_all()
    event = db.get(dbm.CanonicalEvent, event_id)
    return {d.platform: (d.status, d.attempts) for d in event.deliveries}


def test_all_platforms_delivered(db, make_settings):
    event_id = _seed_event(db)
    adapters = _adapters()
    outcomes = asyncio.run(process_canonical_event(db, event_id, make_settings(), adapters, now=T0 + 5))
    assert {o.platform for o in outcomes} == {p.value for p in dbm.Platform}
    assert all(o.status == "SUCCESS" and o.attempts == 1 for o in outcomes)
    row = next(d for d in db.get(dbm.CanonicalEvent, event_id).deliveries if d.platform == "META")
    assert row.response_code == 200
    assert row.last_attempt_at == T0 + 5


def test_terminal_rows_are_never_resent(db, make_settings):
    event_id = _seed_event(db)
    adapters = _adapters()
    asyncio.run(process_canonical_event(db, event_id, make_settings(), adapters))
    outcomes = asyncio.run(process_canonical_event(db, event_id, make_settings(), adapters))
    assert all(o.skipped_terminal for o in outcomes)
    assert all(len(a.calls) == 1 for a in adapters.values())
    assert all(attempts == 1 for _, attempts in _statuses(db, event_id).values())


def test_failed_row_is_retried_until_success(db, make_settings):
    event_id = _seed_event(db)
    tiktok = FakeAdapter(result=Sent(ok=False, status_code=500, response_body="boom", request_body="{}"))
    adapters = _adapters(TIKTOK=tiktok)
    asyncio.run(process_canonical_event(db, event_id, make_settings(), adapters))
    assert _statuses(db, event_id)["TIKTOK"] == ("FAILED", 1)

    tiktok.result = _ok()
    asyncio.run(process_canonical_event(db, event_id, make_settings(), adapters))
    statuses = _statuses(db, event_id)
    assert statuses["TIKTOK"] == ("SUCCESS", 2)
    assert statuses["META"] == ("SUCCESS", 1)
    assert len(adapters["META"].calls) == 1


def test_adapter_exception_is_contained(db, make_settings):
    event_id = _seed_event(db)
    adapters = _adapters(META=FakeAdapter(error=RuntimeError("socket closed")))
    asyncio.run(process_canonical_event(db, event_id, make_settings(), adapters))
    statuses = _statuses(db, event_id)
    assert statuses["META"] == ("FAILED", 1)
    assert statuses["HUBSPOT"] == ("SUCCESS", 1)
    row = next(d for d in db.get(dbm.CanonicalEvent, event_id).deliveries if d.platform == "META")
    assert row.response_body == "socket closed"


def test_failure_without_request_clears_previous_request_body(db, make_settings):
    event_id = _seed_event(db)
    meta = FakeAdapter(result=Sent(ok=False, status_code=500, response_body="boom", request_body='{"attempt": 1}'))
    adapters = _adapters(META=meta)
    asyncio.run(process_canonical_event(db, event_id, make_settings(), adapters))

    meta.error = RuntimeError("socket closed")
    asyncio.run(process_canonical_event(db, event_id, make_settings(), adapters))
    db.expire_all()
    row = next(d for d in db.get(dbm.CanonicalEvent, event_id).deliveries if d.platform == "META")
    assert (row.status, row.attempts) == ("FAILED", 2)
    assert row.response_body == "socket closed"
    assert row.request_body is None


def test_skipped_result_is_terminal(db, make_settings):
    event_id = _seed_event(db)
    adapters = _adapters(HUBSPOT=FakeAdapter(result=Skipped("Missing env: HUBSPOT_PORTAL_ID")))
    asyncio.run(process_canonical_event(db, event_id, make_settings(), adapters))
    asyncio.run(process_canonical_event(db, event_id, make_settings(), adapters))
    assert _statuses(db, event_id)["HUBSPOT"] == ("SKIPPED", 1)
    row = next(d for d in db.get(dbm.CanonicalEvent, event_id).deliveries if d.platform == "HUBSPOT")
    assert row.response_body == "Missing env: HUBSPOT_PORTAL_ID"
    assert row.response_code is None


def test_mock_mode_never_calls_adapters(db, make_settings):
    event_id = _seed_event(db)
    adapters = _adapters()
    asyncio.run(process_canonical_event(db, event_id, make_settings(outbound_mode="mock"), adapters))
    assert all(not a.calls for a in adapters.values())
    row = next(d for d in db.get(dbm.CanonicalEvent, event_id).deliveries if d.platform == "GOOGLE_ADS")
    assert row.status == "SUCCESS"
    assert row.response_body == "mock_google_ads"


def test_unknown_event_raises(db, make_settings):
    with pytest.raises(NotFoundError):
        asyncio.run(process_canonical_event(db, "missing", make_settings(), _adapters()))


def test_conversion_input_prefers_appointment_values(db, make_settings):
    event_id = _seed_event(db)
    event = db.get(dbm.CanonicalEvent, event_id)
    conversion = build_conversion_input(
        make_settings(),
        event,
        db.get(dbm.Appointment, "9001"),
        db.get(dbm.Attribution, "tok-1"),
        db.get(dbm.VisitSession, "s1"),
    )
    assert conversion.gclid == "G-appt"
    assert conversion.ttclid == "TT-attrib"
    assert conversion.ip == "1.1.1.1"
    assert conversion.user_agent == "UA-session"
    assert conversion.event_source_url == "https://www.example.test/book"
    assert conversion.hubspotutk == "hutk-1"
    assert conversion.utm["utm_source"] == "google"
    assert conversion.email == "ada@example.com"


def test_conversion_input_without_attribution_uses_default_url(db, make_settings):
    event_id = _seed_event(db, with_attribution=False)
    event = db.get(dbm.CanonicalEvent, event_id)
    conversion = build_conversion_input(make_settings(), event, db.get(dbm.Appointment, "9001"), None, None)
    assert conversion.event_source_url == "https://www.example.test"
    assert conversion.ip is None
    assert conversion.utm == {}


# --- /api/qstash/deliver ---------------------------------------------------

CURRENT_KEY = "sig_current_0123456789abcdef0123456789abcdef"
NEXT_KEY = "sig_next_0123456789abcdef0123456789abcdef0"


def _qstash_token(body: bytes, key: str, **claims) -> str:
    now = int(time.time())
    payload = {
        "iss": "Upstash",
        "sub": "https://relay.example.test/api/qstash/deliver",
        "iat": now,
        "nbf": now,
        "exp": now + 300,
        "body": base64.urlsafe_b64encode(hashlib.sha256(body).digest()).decode(),
    }
    payload.update(claims)
    return jwt.encode(payload, key, algorithm="HS256")


@pytest.fixture
def deliver_client(make_settings):
    settings = make_settings(
        outbound_mode="mock",
        qstash_current_signing_key=CURRENT_KEY,
        qstash_next_signing_key=NEXT_KEY,
    )
    return TestClient(create_app(settings))


def test_deliver_route_processes_event(deliver_client):
    with SessionLocal() as db:
        event_id = _seed_event(db)
    body = json.dumps({"canonicalEventId": event_id}).encode()
    r = deliver_client.post("/api/qstash/deliver", content=body, headers={"upstash-signature": _qstash_token(body, CURRENT_KEY)})
    assert r.status_code == 200
    data = r.json()
    assert data["ok"] is True
    assert sorted(x["platform"] for x in data["results"]) == ["GOOGLE_ADS", "HUBSPOT", "META", "TIKTOK"]
    assert all(x["status"] == "SUCCESS" for x in data["results"])

    # redelivery of the same job is a no-op
    again = deliver_client.post("/api/qstash/deliver", content=body, headers={"upstash-signature": _qstash_token(body, NEXT_KEY)})
    assert again.status_code == 200
    assert all(x["alreadyTerminal"] for x in again.json()["results"])


def test_deliver_route_rejects_bad_signatures(deliver_client):
    body = json.dumps({"canonicalEventId": "x"}).encode()
    wrong_key = _qstash_token(body, "sig_someone_else_0123456789abcdef0123456")
    tampered = _qstash_token(b'{"canonicalEventId": "y"}', CURRENT_KEY)
    expired = _qstash_token(body, CURRENT_KEY, exp=int(time.time()) - 60, nbf=int(time.time()) - 120, iat=int(time.time()) - 120)
    for signature in (wrong_key, tampered, expired):
        r = deliver_client.post("/api/qstash/deliver", content=body, headers={"upstash-signature": signature})
        assert r.status_code == 401
    assert deliver_client.post("/api/qstash/deliver", content=body).status_code == 401


def test_deliver_route_validates_payload(deliver_client):
    body = b'{"somethingElse": 1}'
    r = deliver_client.post("/api/qstash/deliver", content=body, headers={"upstash-signature": _qstash_token(body, CURRENT_KEY)})
    assert r.status_code == 400

    body = json.dumps({"canonicalEventId": "does-not-exist"}).encode()
    r = deliver_client.post("/api/qstash/deliver", content=body, headers={"upstash-signature": _qstash_token(body, CURRENT_KEY)})
    assert r.status_code == 404
