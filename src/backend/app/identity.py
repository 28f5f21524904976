"""Visitor / session / attribution-token identity store.

Identities arrive from browser cookies and are trusted verbatim when present.
Sessions are the exception: a session id is only reused while the session is
still live, otherwise a fresh one is minted under the same visitor.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.orm import Session

from . import models as dbm
from .normalize import clean

logger = logging.getLogger(__name__)

SESSION_INACTIVITY_SECONDS = 30 * 60


@dataclass(frozen=True)
class Identity:
    visitor_id: str
    session_id: str
    attrib_token: str


@dataclass
class Touch:
    """One marketing touch as reported by the browser beacon."""

    url: Optional[str] = None
    referrer: Optional[str] = None
    params: Dict[str, Optional[str]] = field(default_factory=dict)


def session_is_live(last_seen_at: Optional[int], now: int) -> bool:
    if last_seen_at is None:
        return False
    return now - int(last_seen_at) <= SESSION_INACTIVITY_SECONDS


def _upsert_visitor(db: Session, visitor_id: str, now: int) -> dbm.Visitor:
    row = db.get(dbm.Visitor, visitor_id)
    if row is None:
        row = dbm.Visitor(id=visitor_id, first_seen_at=now, last_seen_at=now)
        db.add(row)
    else:
        row.last_seen_at = now
    return row


def resolve_or_create(
    db: Session,
    existing_visitor_id: Optional[str],
    existing_session_id: Optional[str],
    existing_attrib_token: Optional[str],
    now: int,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Identity:
    visitor_id = clean(existing_visitor_id) or dbm.new_id()
    attrib_token = clean(existing_attrib_token) or dbm.new_id()

    _upsert_visitor(db, visitor_id, now)

    session_row = None
    sid = clean(existing_session_id)
    if sid:
        candidate = db.get(dbm.VisitSession, sid)
        if candidate is not None and session_is_live(candidate.last_seen_at, now):
            session_row = candidate
    if session_row is None:
        if sid:
            logger.debug("session_expired_or_missing", extra={"session_id": sid, "visitor_id": visitor_id})
        session_row = dbm.VisitSession(
            id=dbm.new_id(),
            visitor_id=visitor_id,
            first_seen_at=now,
            last_seen_at=now,
            ip_first=ip,
            ua_first=user_agent,
        )
        db.add(session_row)
    else:
        session_row.last_seen_at = now

    db.flush()
    return Identity(visitor_id=visitor_id, session_id=session_row.id, attrib_token=attrib_token)


def _pick(new: Optional[str], previous: Optional[str]) -> Optional[str]:
    # newly provided non-empty value wins; never erase a recorded value with an absent one
    return clean(new) or previous or None


def merge_attribution_fields(
    existing: Optional[Mapping[str, Any]],
    touch: Touch,
    now: int,
    *,
    visitor_id: Optional[str] = None,
    session_id: Optional[str] = None,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Dict[str, Any]:
    """Column values for an Attribution row after applying ``touch``.

    First-touch columns are written only when there is no existing row;
    last-touch columns are overwritten on every call.
    """
    prev = dict(existing or {})
    url = clean(touch.url)
    referrer = clean(touch.referrer)
    merged: Dict[str, Any] = {
        "last_touch_at": now,
        "last_url": url,
        "last_referrer": referrer,
        "visitor_id": visitor_id or prev.get("visitor_id"),
        "session_id": session_id or prev.get("session_id"),
        "ip": _pick(ip, prev.get("ip")),
        "user_agent": _pick(user_agent, prev.get("user_agent")),
    }
    if existing is None:
        merged.update({"first_touch_at": now, "first_url": url, "first_referrer": referrer})
    else:
        merged.update({
            "first_touch_at": prev.get("first_touch_at"),
            "first_url": prev.get("first_url"),
            "first_referrer": prev.get("first_referrer"),
        })
    for name in dbm.MARKETING_FIELDS:
        merged[name] = _pick(touch.params.get(name), prev.get(name))
    return merged


def attribution_as_dict(row: dbm.Attribution) -> Dict[str, Any]:
    return {c.key: getattr(row, c.key) for c in dbm.Attribution.__table__.columns}


def merge_attribution(
    db: Session,
    token: str,
    now: int,
    touch: Touch,
    *,
    visitor_id: Optional[str] = None,
    session_id: Optional[str] = None,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> dbm.Attribution:
    row = db.get(dbm.Attribution, token)
    merged = merge_attribution_fields(
        attribution_as_dict(row) if row is not None else None,
        touch,
        now,
        visitor_id=visitor_id,
        session_id=session_id,
        ip=ip,
        user_agent=user_agent,
    )
    if row is None:
        row = dbm.Attribution(token=token, **merged)
        db.add(row)
    else:
        for key, value in merged.items():
            setattr(row, key, value)
    db.flush()
    return row
