import base64
import io
from typing import List, Optional, Tuple

import pyotp
import qrcode
import structlog
from sqlalchemy.orm import Session

from config import APP_NAME, TOTP_VALID_WINDOW
from errors import Conflict, InvalidCode, NotSetUp
from models import User
from utils.backup_codes import (
    consume_backup_code, count_remaining_backup_codes, issue_backup_codes, retire_backup_codes
)

logger = structlog.get_logger(__name__)


def generate_totp_secret() -> str:
    """Generate a new TOTP secret"""
    return pyotp.random_base32()


def get_totp_uri(secret: str, email: str, issuer_name: str = APP_NAME) -> str:
    """Generate the otpauth URI for QR code generation"""
    return pyotp.totp.TOTP(secret).provisioning_uri(name=email, issuer_name=issuer_name)


def generate_qr_code(uri: str) -> str:
    """Generate a QR code for the TOTP URI and return as a base64 encoded PNG"""
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(uri)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buffered = io.BytesIO()
    img.save(buffered)
    return base64.b64encode(buffered.getvalue()).decode()


def verify_totp(secret: str, token: str, for_time=None) -> bool:
    """Verify a TOTP token against the secret, allowing one step of clock skew"""
    token = (token or "").strip()
    if not secret or not token:
        return False
    return pyotp.TOTP(secret).verify(token, for_time=for_time, valid_window=TOTP_VALID_WINDOW)


def setup_totp(db: Session, user: User) -> str:
    """Store a fresh pending secret for the user, replacing any unconfirmed one.

    A confirmed secret is only replaced after disabling 2FA, which requires
    the password and a current code.
    """
    if user.two_factor_enabled:
        raise Conflict("Two-factor authentication is already enabled")

    secret = generate_totp_secret()
    user.two_factor_secret = secret
    db.commit()

    logger.info("totp_secret_generated", user_id=user.id)
    return secret


def enable_totp(db: Session, user: User, token: str) -> List[str]:
    """Confirm the pending secret with a code and switch 2FA on.

    Returns the plaintext backup codes; they are not retrievable later.
    """
    if not user.two_factor_secret:
        raise NotSetUp("Two-factor authentication has not been set up")

    if not verify_totp(user.two_factor_secret, token):
        raise InvalidCode()

    user.two_factor_enabled = True
    backup_codes = issue_backup_codes(db, user.id)
    db.commit()

    logger.info("two_factor_enabled", user_id=user.id)
    return backup_codes


def verify_two_factor(db: Session, user_id: str, token: str) -> Tuple[bool, bool]:
    """Check a login-time code. Returns ``(verified, used_backup_code)``.

    The TOTP is tried first, then the user's unused backup codes. Both
    failures raise the same InvalidCode.
    """
    user = db.query(User).filter(User.id == user_id).first()
    if not user or not user.two_factor_enabled or not user.two_factor_secret:
        raise NotSetUp("Two-factor authentication is not enabled")

    if verify_totp(user.two_factor_secret, token):
        return True, False

    if token and consume_backup_code(db, user.id, token):
        logger.info(
            "two_factor_verified_with_backup_code",
            user_id=user.id,
            remaining=count_remaining_backup_codes(db, user.id),
        )
        return True, True

    logger.warning("two_factor_verification_failed", user_id=user.id)
    raise InvalidCode()


def disable_totp(db: Session, user: User, token: str, password_verified: bool) -> None:
    """Disable TOTP for a user"""
    if not user.two_factor_enabled or not user.two_factor_secret:
        raise NotSetUp("Two-factor authentication is not enabled")

    if not password_verified or not verify_totp(user.two_factor_secret, token):
        raise InvalidCode("Invalid password or authentication code")

    user.two_factor_enabled = False
    user.two_factor_secret = None
    retire_backup_codes(db, user.id)
    db.commit()

    logger.info("two_factor_disabled", user_id=user.id)


def requires_totp(user: Optional[User]) -> bool:
    """Check if a user has TOTP enabled"""
    return bool(user and user.two_factor_enabled and user.two_factor_secret)
