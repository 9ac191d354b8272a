import hashlib
import secrets
from datetime import timedelta
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from auth import get_password_hash, get_user
from config import EMAIL_VERIFY_EXPIRE_HOURS, PASSWORD_RESET_EXPIRE_MINUTES
from errors import EmailDeliveryError, InvalidOrExpiredToken
from models import TokenPurpose, User, VerificationToken, utcnow
from utils.email import EmailSender, send_email_verification, send_password_reset, send_security_alert
from utils.sessions import revoke_all_sessions

logger = structlog.get_logger(__name__)

TOKEN_LIFETIMES = {
    TokenPurpose.PASSWORD_RESET: timedelta(minutes=PASSWORD_RESET_EXPIRE_MINUTES),
    TokenPurpose.EMAIL_VERIFY: timedelta(hours=EMAIL_VERIFY_EXPIRE_HOURS),
}


def generate_token() -> str:
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def create_token(db: Session, user_id: str, purpose: TokenPurpose, lifetime: Optional[timedelta] = None) -> str:
    """Persist a new token and return its plaintext.

    Older outstanding tokens of the same purpose stop working, so only the
    most recent link sent to the user is live.
    """
    db.query(VerificationToken).filter(
        VerificationToken.user_id == user_id,
        VerificationToken.purpose == purpose,
        VerificationToken.consumed == False
    ).update({VerificationToken.consumed: True}, synchronize_session=False)

    token = generate_token()
    db.add(VerificationToken(
        token_hash=hash_token(token),
        user_id=user_id,
        purpose=purpose,
        expires_at=utcnow() + (lifetime or TOKEN_LIFETIMES[purpose]),
        consumed=False,
    ))
    db.commit()

    logger.info("token_issued", user_id=user_id, purpose=purpose.value)
    return token


def get_valid_token(db: Session, token: str, purpose: TokenPurpose) -> VerificationToken:
    record = db.query(VerificationToken).filter(
        VerificationToken.token_hash == hash_token(token),
        VerificationToken.purpose == purpose,
        VerificationToken.consumed == False,
        VerificationToken.expires_at > utcnow()
    ).first()

    if not record:
        raise InvalidOrExpiredToken()
    return record


def consume_token(db: Session, token: str, purpose: TokenPurpose) -> VerificationToken:
    """Mark a token consumed with one conditional UPDATE.

    Does not commit: the caller applies its own change in the same
    transaction and commits both together.
    """
    token_hash = hash_token(token)
    now = utcnow()

    matched = db.query(VerificationToken).filter(
        VerificationToken.token_hash == token_hash,
        VerificationToken.purpose == purpose,
        VerificationToken.consumed == False,
        VerificationToken.expires_at > now
    ).update({VerificationToken.consumed: True, VerificationToken.consumed_at: now}, synchronize_session=False)

    if not matched:
        db.rollback()
        raise InvalidOrExpiredToken()

    return db.query(VerificationToken).filter(VerificationToken.token_hash == token_hash).one()


# Password reset

def issue_reset_token(db: Session, email: str, sender: EmailSender) -> Optional[str]:
    """Create and mail a reset link. Unknown addresses get neither."""
    user = get_user(db, email)
    if not user or not user.is_active:
        logger.info("password_reset_requested_for_unknown_email")
        return None

    token = create_token(db, user.id, TokenPurpose.PASSWORD_RESET)
    send_password_reset(sender, user.email, token, user.name)
    return token


def verify_reset_token(db: Session, token: str) -> User:
    return get_valid_token(db, token, TokenPurpose.PASSWORD_RESET).user


def reset_password(db: Session, token: str, new_password: str, sender: EmailSender,
                   ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> User:
    record = consume_token(db, token, TokenPurpose.PASSWORD_RESET)
    user = record.user
    user.hashed_password = get_password_hash(new_password)
    user.failed_login_attempts = 0
    user.lockout_until = None
    db.commit()

    # Every existing login was made with the old password.
    revoke_all_sessions(db, user.id)
    logger.info("password_reset_completed", user_id=user.id)

    try:
        send_security_alert(sender, user.email, user.name, "Your password was changed", ip_address, user_agent)
    except EmailDeliveryError:
        logger.exception("security_alert_failed", user_id=user.id)

    return user


# Email verification

def issue_verification_token(db: Session, user: User, sender: EmailSender) -> str:
    token = create_token(db, user.id, TokenPurpose.EMAIL_VERIFY)
    send_email_verification(sender, user.email, token, user.name)
    return token


def verify_email_token(db: Session, token: str) -> User:
    record = consume_token(db, token, TokenPurpose.EMAIL_VERIFY)
    user = record.user
    user.email_verified = utcnow()
    db.commit()

    logger.info("email_verified", user_id=user.id)
    return user
