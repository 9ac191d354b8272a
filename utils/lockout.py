from datetime import timedelta
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from config import LOCKOUT_MINUTES, MAX_LOGIN_ATTEMPTS
from errors import EmailDeliveryError
from models import LoginAttempt, User, utcnow
from utils.email import EmailSender, send_security_alert

logger = structlog.get_logger(__name__)


def is_account_locked(db: Session, user: Optional[User]) -> bool:
    if not user or not user.lockout_until:
        return False

    if user.lockout_until <= utcnow():
        # lockout expired
        user.failed_login_attempts = 0
        user.lockout_until = None
        db.commit()
        return False

    return True


def record_login_attempt(db: Session, email: str, success: bool, sender: EmailSender,
                         ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> None:
    email = email.lower()
    db.add(LoginAttempt(email=email, success=success, ip_address=ip_address, user_agent=user_agent))

    user = db.query(User).filter(User.email == email).first()
    if not user:
        db.commit()
        return

    if success:
        user.failed_login_attempts = 0
        user.lockout_until = None
        db.commit()
        return

    db.query(User).filter(User.id == user.id).update(
        {User.failed_login_attempts: User.failed_login_attempts + 1},
        synchronize_session=False,
    )
    db.commit()
    db.refresh(user)

    if user.failed_login_attempts < MAX_LOGIN_ATTEMPTS or user.lockout_until:
        return

    user.lockout_until = utcnow() + timedelta(minutes=LOCKOUT_MINUTES)
    db.commit()
    logger.warning("account_locked", user_id=user.id, attempts=user.failed_login_attempts)

    try:
        send_security_alert(
            sender, user.email, user.name,
            "Your account was locked after repeated failed sign-in attempts",
            ip_address, user_agent,
        )
    except EmailDeliveryError:
        logger.exception("security_alert_failed", user_id=user.id)
