"""
Cookie-backed record of services this browser has already paid for.

The cookie holds a URL-encoded JSON array of sessions. It is a convenience gate for
non-sensitive content only: anyone can edit their own cookie.
"""
import json
import logging
from datetime import datetime, timedelta
from typing import List, Optional
from urllib.parse import quote, unquote

from pydantic import ValidationError
from fastapi import Response

from payment_service.schemas import PaidSession

logger = logging.getLogger(__name__)

COOKIE_NAME = "paid_services"
SESSION_DURATION = timedelta(hours=3)

def parse_sessions(cookie_value: Optional[str]) -> List[PaidSession]:
    if not cookie_value:
        return []
    try:
        raw = json.loads(unquote(cookie_value))
        return [PaidSession.model_validate(entry) for entry in raw]
    except (ValueError, TypeError, ValidationError) as e:
        logger.error("Error reading paid sessions: %s", e)
        return []

def encode_sessions(sessions: List[PaidSession]) -> str:
    payload = [s.model_dump(mode="json", by_alias=True) for s in sessions]
    return quote(json.dumps(payload, separators=(",", ":")), safe="")

def is_expired(session: PaidSession, now: datetime) -> bool:
    # paid_at is held as naive UTC, see PaidSession
    return now - session.paid_at >= SESSION_DURATION

class PaidSessionCache:
    def __init__(self, cookie_value: Optional[str], now: Optional[datetime] = None):
        self.now = now or datetime.utcnow()
        self.sessions = parse_sessions(cookie_value)

    def get_all_active_sessions(self) -> List[PaidSession]:
        return [s for s in self.sessions if not is_expired(s, self.now)]

    def get_paid_session_details(self, service_type: str, action_type: str) -> Optional[PaidSession]:
        for session in self.get_all_active_sessions():
            if session.service_type == service_type and session.action_type == action_type:
                return session
        return None

    def has_active_paid_session(self, service_type: str, action_type: str) -> bool:
        return self.get_paid_session_details(service_type, action_type) is not None

    def record_payment_session(
        self, service_type: str, action_type: str, phone_number: str, transaction_id: str
    ) -> PaidSession:
        new_session = PaidSession(
            service_type=service_type,
            action_type=action_type,
            phone_number=phone_number,
            paid_at=self.now,
            transaction_id=transaction_id,
        )
        # One entry per (serviceType, actionType); expired entries are dropped on every write
        kept = [
            s for s in self.sessions
            if not (s.service_type == service_type and s.action_type == action_type)
        ]
        kept.append(new_session)
        self.sessions = [s for s in kept if not is_expired(s, self.now)]
        logger.info("Payment session recorded: %s - %s", service_type, action_type)
        return new_session

    def write(self, response: Response):
        response.set_cookie(
            COOKIE_NAME,
            encode_sessions(self.sessions),
            max_age=int(SESSION_DURATION.total_seconds()),
            path="/",
            samesite="lax",
        )

def clear_payment_sessions(response: Response):
    response.delete_cookie(COOKIE_NAME, path="/")
    logger.info("Payment sessions cleared")
