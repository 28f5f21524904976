import asyncio
import base64
import hashlib
import hmac
import json
from unittest import mock
from urllib.parse import urlencode

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select

from src.backend.app import models as dbm
from src.backend.app.db import SessionLocal
from src.backend.app.delivery import build_conversion_input
from src.backend.app.delivery_queue import QueuePublishError
from src.backend.app.errors import UpstreamFetchError, ValidationError
from src.backend.app.integrations.crm_hubspot import HubSpotFormsAdapter
from src.backend.app.main import create_app
from src.backend.app.normalize import hash_email, sha256_hex
from src.backend.app.webhooks import classify_event, parse_notice, receive_acuity_webhook

SECRET = "acuity-key"
FETCH = "src.backend.app.webhooks.fetch_appointment_by_id"


def _sign(body: bytes, secret: str = SECRET) -> str:
    return base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()


def _form(action: str = "scheduled", appt_id: str = "9001", type_id: str = "555") -> bytes:
    return urlencode({"action": action, "id": appt_id, "calendarID": "7", "appointmentTypeID": type_id}).encode()


def _appointment(appt_id: int = 9001, type_id: int = 555, **extra):
    appt = {
        "id": appt_id,
        "appointmentTypeID": type_id,
        "calendarID": 7,
        "datetime": "2025-06-01T10:00:00-0400",
        "canceled": False,
        "firstName": " Ada ",
        "lastName": "Lovelace",
        "email": "Ada.Lovelace+trial@Gmail.com",
        "phone": "(415) 555-0100",
        "fields": [
            {"id": 101, "value": " tok-abc "},
            {"id": 102, "value": "GCLID-1"},
        ],
    }
    appt.update(extra)
    return appt


def _post(client, body: bytes, signature=None, content_type="application/x-www-form-urlencoded", **headers):
    headers = dict(headers)
    headers["content-type"] = content_type
    headers["x-acuity-signature"] = _sign(body) if signature is None else signature
    return client.post("/api/webhooks/acuity", content=body, headers=headers)


def _count(model) -> int:
    with SessionLocal() as db:
        return db.execute(select(func.count()).select_from(model)).scalar_one()


@pytest.fixture
def client(make_settings):
    return TestClient(create_app(make_settings()))


def test_signed_booking_creates_event_and_deliveries(client):
    body = _form()
    with mock.patch(FETCH, new=mock.AsyncMock(return_value=_appointment())) as fetch:
        r = _post(client, body)
    assert r.status_code == 200
    data = r.json()
    assert data["ok"] is True
    assert data["eventName"] == "TRIAL_BOOKED"
    assert data["eventId"] == "9001"
    assert data["vaAttrib"] == "tok-abc"
    assert fetch.await_count == 1

    with SessionLocal() as db:
        appt = db.get(dbm.Appointment, "9001")
        assert appt.email == "ada.lovelace+trial@gmail.com"
        assert appt.phone == "4155550100"
        assert appt.first_name == "Ada"
        assert appt.gclid == "GCLID-1"
        assert appt.status == "scheduled"
        event = db.get(dbm.CanonicalEvent, data["canonicalEventId"])
        assert event.attribution_tok == "tok-abc"
        assert event.currency == "USD"
        assert sorted(d.platform for d in event.deliveries) == ["GOOGLE_ADS", "HUBSPOT", "META", "TIKTOK"]
        assert all(d.status == "PENDING" and d.attempts == 0 for d in event.deliveries)


def test_identical_body_is_deduped(client):
    body = _form()
    with mock.patch(FETCH, new=mock.AsyncMock(return_value=_appointment())) as fetch:
        first = _post(client, body)
        second = _post(client, body)
    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json() == {"ok": True, "deduped": True}
    assert fetch.await_count == 1
    assert _count(dbm.InboundWebhook) == 1
    assert _count(dbm.Appointment) == 1
    assert _count(dbm.CanonicalEvent) == 1
    assert _count(dbm.Delivery) == 4


def test_bad_signature_is_rejected_without_side_effects(client):
    body = _form()
    with mock.patch(FETCH, new=mock.AsyncMock(return_value=_appointment())) as fetch:
        r = _post(client, body, signature="bm90LXRoZS1zaWduYXR1cmU=")
    assert r.status_code == 401
    assert r.json()["error"] == "unauthorized"
    assert fetch.await_count == 0
    assert _count(dbm.InboundWebhook) == 0


def test_hex_signature_is_accepted(client):
    body = _form()
    hex_sig = hmac.new(SECRET.encode(), body, hashlib.sha256).hexdigest()
    with mock.patch(FETCH, new=mock.AsyncMock(return_value=_appointment())):
        r = _post(client, body, signature=hex_sig)
    assert r.status_code == 200


def test_missing_id_is_a_client_error(client):
    body = urlencode({"action": "scheduled"}).encode()
    r = _post(client, body)
    assert r.status_code == 400
    assert r.json()["detail"] == "Missing id"


def test_missing_secret_is_a_server_error(make_settings):
    client = TestClient(create_app(make_settings(acuity_api_key=None, acuity_webhook_secret=None)))
    r = _post(client, _form())
    assert r.status_code == 500
    assert r.json()["error"] == "config_error"


def test_fetch_failure_leaves_no_dedupe_row_so_retry_succeeds(client):
    body = _form()
    failing = mock.AsyncMock(side_effect=UpstreamFetchError("Acuity fetch failed 503"))
    with mock.patch(FETCH, new=failing):
        r = _post(client, body)
    assert r.status_code == 502
    assert r.json()["error"] == "upstream_error"
    assert _count(dbm.InboundWebhook) == 0
    assert _count(dbm.CanonicalEvent) == 0

    with mock.patch(FETCH, new=mock.AsyncMock(return_value=_appointment())):
        retry = _post(client, body)
    assert retry.status_code == 200
    assert "deduped" not in retry.json()
    assert _count(dbm.CanonicalEvent) == 1


def test_json_with_embedded_appointment_skips_fetch(client):
    payload = {
        "action": "rescheduled",
        "id": 9002,
        "appointment": _appointment(9002),
        "vaAttrib": "tok-override",
    }
    body = json.dumps(payload).encode()
    with mock.patch(FETCH, new=mock.AsyncMock()) as fetch:
        r = _post(client, body, content_type="application/json")
    assert r.status_code == 200
    assert fetch.await_count == 0
    assert r.json()["eventName"] == "TRIAL_RESCHEDULED"
    assert r.json()["vaAttrib"] == "tok-override"


def test_dev_bypass_requires_flag_and_header(make_settings):
    payload = {"action": "scheduled", "id": "77", "appointmentTypeID": "555", "email": "dev@example.com"}
    body = json.dumps(payload).encode()
    bypass_client = TestClient(create_app(make_settings(acuity_webhook_dev_bypass=True)))
    r = bypass_client.post("/api/webhooks/acuity", content=body, headers={"content-type": "application/json", "x-acuity-dev": "1"})
    assert r.status_code == 200
    assert r.json()["eventName"] == "TRIAL_BOOKED"

    strict_client = TestClient(create_app(make_settings()))
    r = strict_client.post("/api/webhooks/acuity", content=body, headers={"content-type": "application/json", "x-acuity-dev": "1"})
    assert r.status_code == 401


def test_passthrough_fields_survive_later_notice_without_them(client):
    first = _form(action="scheduled")
    later = _form(action="rescheduled")
    with mock.patch(FETCH, new=mock.AsyncMock(return_value=_appointment())):
        _post(client, first)
    with mock.patch(FETCH, new=mock.AsyncMock(return_value=_appointment(fields=[]))):
        r = _post(client, later)
    assert r.status_code == 200
    with SessionLocal() as db:
        appt = db.get(dbm.Appointment, "9001")
        assert appt.va_attrib == "tok-abc"
        assert appt.gclid == "GCLID-1"


def test_enqueue_failure_does_not_roll_back(db, make_settings):
    settings = make_settings()
    body = _form()
    enqueue = mock.AsyncMock(side_effect=QueuePublishError("QStash publish failed 500"))
    with mock.patch(FETCH, new=mock.AsyncMock(return_value=_appointment())):
        result = asyncio.run(receive_acuity_webhook(db, settings, body, signature=_sign(body), enqueue=enqueue))
    assert enqueue.await_count == 1
    assert result.enqueued is False
    assert result.canonical_event_id
    assert _count(dbm.CanonicalEvent) == 1
    assert _count(dbm.InboundWebhook) == 1


def test_enqueue_receives_committed_event_id(db, make_settings):
    settings = make_settings()
    body = _form()
    enqueue = mock.AsyncMock(return_value=True)
    with mock.patch(FETCH, new=mock.AsyncMock(return_value=_appointment())):
        result = asyncio.run(receive_acuity_webhook(db, settings, body, signature=_sign(body), enqueue=enqueue))
    enqueue.assert_awaited_once_with(settings, result.canonical_event_id)
    assert result.enqueued is True


def test_classify_event():
    trial = frozenset({"555"})
    assert classify_event({"appointmentTypeID": 555}, "scheduled", trial) == dbm.EventName.TRIAL_BOOKED
    assert classify_event({"appointmentTypeID": 555}, "changed", trial) == dbm.EventName.TRIAL_BOOKED
    assert classify_event({"appointmentTypeID": 555}, "rescheduled", trial) == dbm.EventName.TRIAL_RESCHEDULED
    assert classify_event({"appointmentTypeID": 555}, "canceled", trial) == dbm.EventName.TRIAL_CANCELED
    assert classify_event({"appointmentTypeID": 555, "canceled": True}, "rescheduled", trial) == dbm.EventName.TRIAL_CANCELED
    assert classify_event({"appointmentTypeID": 1}, "scheduled", trial) == dbm.EventName.APPOINTMENT_UPDATED
    assert classify_event({}, "scheduled", frozenset()) == dbm.EventName.APPOINTMENT_UPDATED


def test_parse_notice_formats():
    form = parse_notice(b"action=canceled&id=12&calendarID=3&appointmentTypeID=555")
    assert (form.action, form.appointment_id, form.calendar_id, form.appointment_type_id) == ("canceled", "12", "3", "555")
    assert form.payload is None

    js = parse_notice(b'{"id": 12}', "application/json")
    assert js.action == "unknown"
    assert js.payload == {"id": 12}

    with pytest.raises(ValidationError):
        parse_notice(b"{broken", "application/json")
    with pytest.raises(ValidationError):
        parse_notice(b"action=scheduled")


def test_browser_touch_flows_into_conversion(make_settings):
    client = TestClient(create_app(make_settings()))
    touch = client.post(
        "/api/attrib/ingest",
        json={"url": "https://www.example.test/?utm_source=google", "utm": {"utm_source": "google", "utm_campaign": "trial"}, "click": {"ttclid": "TT-7"}},
        headers={"x-forwarded-for": "8.8.8.8", "user-agent": "Browser/1.0"},
    ).json()

    appt = _appointment(fields=[{"id": 101, "value": touch["attribTok"]}])
    with mock.patch(FETCH, new=mock.AsyncMock(return_value=appt)):
        r = _post(client, _form())
    assert r.json()["vaAttrib"] == touch["attribTok"]

    with SessionLocal() as db:
        event = db.get(dbm.CanonicalEvent, r.json()["canonicalEventId"])
        attribution = db.get(dbm.Attribution, event.attribution_tok)
        conversion = build_conversion_input(
            make_settings(),
            event,
            db.get(dbm.Appointment, event.appointment_id),
            attribution,
            db.get(dbm.VisitSession, attribution.session_id),
        )
    assert conversion.ttclid == "TT-7"
    assert conversion.utm["utm_campaign"] == "trial"
    assert conversion.ip == "8.8.8.8"
    assert conversion.user_agent == "Browser/1.0"
    assert conversion.email == "ada.lovelace+trial@gmail.com"
    assert hash_email(conversion.email) == sha256_hex("adalovelace@gmail.com")


def test_hubspot_receives_booked_email_unchanged(make_settings):
    client = TestClient(create_app(make_settings()))
    appt = _appointment(email=" John.Doe+promo@GMAIL.com ")
    with mock.patch(FETCH, new=mock.AsyncMock(return_value=appt)):
        r = _post(client, _form())
    assert r.status_code == 200

    settings = make_settings(hubspot_portal_id="123", hubspot_private_app_token="hs-token", hubspot_trial_form_guid="form-trial")
    with SessionLocal() as db:
        event = db.get(dbm.CanonicalEvent, r.json()["canonicalEventId"])
        attribution = db.get(dbm.Attribution, event.attribution_tok)
        conversion = build_conversion_input(settings, event, db.get(dbm.Appointment, event.appointment_id), attribution, None)
    submission = HubSpotFormsAdapter(settings).build_submission(conversion, submitted_at_ms=0)
    fields = {f["name"]: f["value"] for f in submission["fields"]}
    assert fields["email"] == "john.doe+promo@gmail.com"
