from datetime import timedelta
from typing import List, Optional

import structlog
from sqlalchemy.orm import Session

from config import SESSION_EXPIRE_DAYS
from errors import NotFound
from models import UserSession, utcnow

logger = structlog.get_logger(__name__)


def parse_user_agent(user_agent: Optional[str]) -> str:
    """Coarse device label shown next to each session."""
    if not user_agent:
        return "Unknown Device"

    # Order matters: mobile Chrome/Safari agents carry "Mobile" too.
    if "Mobile" in user_agent:
        return "Mobile Device"
    if "Tablet" in user_agent:
        return "Tablet"
    if "Chrome" in user_agent:
        return "Chrome Browser"
    if "Firefox" in user_agent:
        return "Firefox Browser"
    if "Safari" in user_agent:
        return "Safari Browser"

    return "Desktop Browser"


def get_client_ip(headers, peer_host: Optional[str] = None) -> str:
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()

    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip

    return peer_host or "unknown"


def create_session(db: Session, user_id: str, ip_address: Optional[str] = None,
                   user_agent: Optional[str] = None) -> UserSession:
    now = utcnow()
    session = UserSession(
        user_id=user_id,
        created_at=now,
        last_active_at=now,
        expires_at=now + timedelta(days=SESSION_EXPIRE_DAYS),
        ip_address=ip_address,
        user_agent=user_agent,
        device_info=parse_user_agent(user_agent),
    )
    db.add(session)
    db.commit()
    db.refresh(session)

    logger.info("session_created", user_id=user_id, session_id=session.id, device=session.device_info)
    return session


def get_active_session(db: Session, session_id: str) -> Optional[UserSession]:
    return db.query(UserSession).filter(
        UserSession.id == session_id,
        UserSession.expires_at > utcnow()
    ).first()


def touch_session(db: Session, session: UserSession) -> None:
    session.last_active_at = utcnow()
    db.commit()


def list_sessions(db: Session, user_id: str) -> List[UserSession]:
    """Active sessions of a user, most recently active first."""
    return (
        db.query(UserSession)
        .filter(UserSession.user_id == user_id, UserSession.expires_at > utcnow())
        .order_by(UserSession.last_active_at.desc(), UserSession.created_at.desc())
        .all()
    )


def revoke_session(db: Session, session_id: str, caller_id: str) -> None:
    """Delete one session owned by the caller.

    Ownership is part of the delete itself, so a foreign session id matches
    nothing and reports the same NotFound as an unknown one.
    """
    deleted = db.query(UserSession).filter(
        UserSession.id == session_id,
        UserSession.user_id == caller_id
    ).delete(synchronize_session=False)
    db.commit()

    if not deleted:
        raise NotFound("Session not found")

    logger.info("session_revoked", user_id=caller_id, session_id=session_id)


def revoke_all_sessions(db: Session, user_id: str, keep_session_id: Optional[str] = None) -> int:
    query = db.query(UserSession).filter(UserSession.user_id == user_id)
    if keep_session_id:
        query = query.filter(UserSession.id != keep_session_id)

    deleted = query.delete(synchronize_session=False)
    db.commit()

    logger.info("sessions_revoked", user_id=user_id, count=deleted, kept=keep_session_id)
    return deleted
