import enum
import time
import uuid
from typing import List, Optional

from sqlalchemy import Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


def new_id() -> str:
    return uuid.uuid4().hex


def _now() -> int:
    return int(time.time())


class EventName(str, enum.Enum):
    TRIAL_BOOKED = "TRIAL_BOOKED"
    TRIAL_RESCHEDULED = "TRIAL_RESCHEDULED"
    TRIAL_CANCELED = "TRIAL_CANCELED"
    APPOINTMENT_UPDATED = "APPOINTMENT_UPDATED"


class Platform(str, enum.Enum):
    META = "META"
    HUBSPOT = "HUBSPOT"
    GOOGLE_ADS = "GOOGLE_ADS"
    TIKTOK = "TIKTOK"


class DeliveryStatus(str, enum.Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


TERMINAL_STATUSES = frozenset({DeliveryStatus.SUCCESS.value, DeliveryStatus.SKIPPED.value})

# Marketing parameters carried on an Attribution row, merged field by field
MARKETING_FIELDS = (
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_term",
    "utm_content",
    "gclid",
    "gbraid",
    "wbraid",
    "dclid",
    "fbclid",
    "fbp",
    "fbc",
    "ttclid",
    "msclkid",
    "hubspotutk",
)


class Visitor(Base):
    __tablename__ = "visitors"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    first_seen_at: Mapped[int] = mapped_column(Integer, default=_now)
    last_seen_at: Mapped[int] = mapped_column(Integer, default=_now)


class VisitSession(Base):
    __tablename__ = "sessions"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    visitor_id: Mapped[str] = mapped_column(String(64), ForeignKey("visitors.id"), index=True)
    first_seen_at: Mapped[int] = mapped_column(Integer, default=_now)
    last_seen_at: Mapped[int] = mapped_column(Integer, default=_now)
    ip_first: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    ua_first: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class Attribution(Base):
    __tablename__ = "attributions"
    token: Mapped[str] = mapped_column(String(64), primary_key=True)
    visitor_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("visitors.id"), index=True, nullable=True)
    session_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    first_touch_at: Mapped[int] = mapped_column(Integer)
    last_touch_at: Mapped[int] = mapped_column(Integer)
    first_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    first_referrer: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_referrer: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    utm_source: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    utm_medium: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    utm_campaign: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    utm_term: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    utm_content: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    gclid: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    gbraid: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    wbraid: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    dclid: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    fbclid: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    fbp: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    fbc: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    ttclid: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    msclkid: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    hubspotutk: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)


class InboundWebhook(Base):
    __tablename__ = "inbound_webhooks"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    source: Mapped[str] = mapped_column(String(32))
    action: Mapped[str] = mapped_column(String(64))
    external_id: Mapped[str] = mapped_column(String(128), index=True)
    body_raw: Mapped[str] = mapped_column(Text)
    body_hash: Mapped[str] = mapped_column(String(64), unique=True)
    received_at: Mapped[int] = mapped_column(Integer, default=_now)


class Appointment(Base):
    __tablename__ = "appointments"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    appointment_type_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    calendar_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="scheduled")
    datetime: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    va_attrib: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    gclid: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    ttclid: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    fbp: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    fbc: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    raw_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[int] = mapped_column(Integer, default=_now)


class CanonicalEvent(Base):
    __tablename__ = "canonical_events"
    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(32))
    event_time: Mapped[int] = mapped_column(Integer)
    appointment_id: Mapped[Optional[str]] = mapped_column(String(64), index=True, nullable=True)
    attribution_tok: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    value: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(8), nullable=True, default="USD")
    event_id: Mapped[str] = mapped_column(String(128), index=True)
    created_at: Mapped[int] = mapped_column(Integer, default=_now)

    deliveries: Mapped[List["Delivery"]] = relationship(
        back_populates="canonical_event", order_by="Delivery.id"
    )


class Delivery(Base):
    __tablename__ = "deliveries"
    __table_args__ = (UniqueConstraint("canonical_event_id", "platform", name="uq_delivery_event_platform"),)
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    canonical_event_id: Mapped[str] = mapped_column(String(64), ForeignKey("canonical_events.id"), index=True)
    platform: Mapped[str] = mapped_column(String(16))
    status: Mapped[str] = mapped_column(String(16), default=DeliveryStatus.PENDING.value, index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_attempt_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    response_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    response_body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    request_body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    canonical_event: Mapped[CanonicalEvent] = relationship(back_populates="deliveries")
