from datetime import timedelta
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from sqlalchemy.orm import Session

import models
import schemas
from auth import (
    authenticate_user, create_access_token, get_current_session, get_current_user,
    get_password_hash, get_user, verify_password
)
from config import (
    ACCESS_TOKEN_EXPIRE_MINUTES, SESSION_COOKIE_NAME, SESSION_COOKIE_SAMESITE, SESSION_COOKIE_SECURE
)
from database import get_db
from errors import AccountLocked, AuthError, Conflict, EmailDeliveryError, InvalidCode
from utils.email import EmailSender, get_email_sender
from utils.lockout import is_account_locked, record_login_attempt
from utils.sessions import create_session, get_client_ip, list_sessions, revoke_all_sessions, revoke_session
from utils.tokens import (
    issue_reset_token, issue_verification_token, reset_password, verify_email_token, verify_reset_token
)
from utils.totp import (
    disable_totp, enable_totp, generate_qr_code, get_totp_uri, requires_totp, setup_totp, verify_two_factor
)

logger = structlog.get_logger(__name__)

auth_router = APIRouter()

FORGOT_PASSWORD_MESSAGE = "If an account with that email exists, you will receive password reset instructions."


def _client_meta(request: Request):
    peer = request.client.host if request.client else None
    return get_client_ip(request.headers, peer), request.headers.get("user-agent")


def _user_data(user: models.User) -> dict:
    return schemas.UserOut.model_validate(user).model_dump(mode="json", by_alias=True)


def _set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        secure=SESSION_COOKIE_SECURE,
        samesite=SESSION_COOKIE_SAMESITE,
        max_age=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


def _clear_session_cookie(response: Response) -> None:
    response.delete_cookie(key=SESSION_COOKIE_NAME)


@auth_router.post("/register", status_code=201)
def register_user(
        user_data: schemas.UserCreate,
        db: Session = Depends(get_db),
        email_sender: EmailSender = Depends(get_email_sender)
):
    # Check if user already exists
    if get_user(db, user_data.email):
        raise Conflict("User with this email already exists")

    new_user = models.User(
        name=user_data.name,
        email=user_data.email.lower(),
        hashed_password=get_password_hash(user_data.password),
    )
    db.add(new_user)
    db.commit()
    db.refresh(new_user)
    logger.info("user_registered", user_id=new_user.id)

    try:
        issue_verification_token(db, new_user, email_sender)
    except EmailDeliveryError:
        logger.exception("verification_email_failed", user_id=new_user.id)

    return {
        "success": True,
        "message": "User registered successfully",
        "data": _user_data(new_user)
    }


# Login endpoint with 2FA support
@auth_router.post("/login")
def login(
        login_data: schemas.UserLogin,
        request: Request,
        response: Response,
        db: Session = Depends(get_db),
        email_sender: EmailSender = Depends(get_email_sender)
):
    ip_address, user_agent = _client_meta(request)

    if is_account_locked(db, get_user(db, login_data.email)):
        raise AccountLocked()

    user = authenticate_user(db, login_data.email, login_data.password)
    if not user:
        record_login_attempt(db, login_data.email, False, email_sender, ip_address, user_agent)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Inactive user")

    used_backup_code = False

    # Check if 2FA is required
    if requires_totp(user):
        if not login_data.otp_code:
            return {
                "success": True,
                "message": "Two-factor authentication required",
                "data": {"requires2fa": True, "userId": user.id}
            }

        try:
            _, used_backup_code = verify_two_factor(db, user.id, login_data.otp_code)
        except InvalidCode:
            record_login_attempt(db, login_data.email, False, email_sender, ip_address, user_agent)
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid authentication code",
                headers={"WWW-Authenticate": "Bearer"},
            )

    record_login_attempt(db, login_data.email, True, email_sender, ip_address, user_agent)

    session = create_session(db, user.id, ip_address, user_agent)
    access_token = create_access_token(
        data={"sub": user.id, "sid": session.id},
        expires_delta=timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES),
    )
    _set_session_cookie(response, access_token)

    return {
        "success": True,
        "message": "Login successful",
        "data": {
            "accessToken": access_token,
            "tokenType": "bearer",
            "sessionId": session.id,
            "usedBackupCode": used_backup_code
        }
    }


@auth_router.post("/logout")
def logout(
        response: Response,
        db: Session = Depends(get_db),
        current_session: models.UserSession = Depends(get_current_session)
):
    revoke_session(db, current_session.id, current_session.user_id)
    _clear_session_cookie(response)
    return {"success": True, "message": "Logged out", "data": {}}


@auth_router.get("/me")
def read_me(current_user: models.User = Depends(get_current_user)):
    return {"success": True, "data": _user_data(current_user)}


# Set up 2FA endpoint
@auth_router.post("/2fa/setup")
def setup_2fa(db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    secret = setup_totp(db, current_user)

    otpauth_url = get_totp_uri(secret, current_user.email)
    qr_image = generate_qr_code(otpauth_url)

    return {
        "success": True,
        "message": "2FA setup initiated",
        "data": {
            "secret": secret,
            "qrCode": otpauth_url,
            "manualEntryKey": secret,
            "qrImage": qr_image
        }
    }


# Confirm the pending secret and enable 2FA
@auth_router.post("/2fa/enable")
def enable_2fa(
        enable_data: schemas.TOTPEnableRequest,
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_user)
):
    backup_codes = enable_totp(db, current_user, enable_data.token)
    return {
        "success": True,
        "message": "Two-factor authentication enabled successfully",
        "data": {"backupCodes": backup_codes}
    }


# Login-time check of a TOTP or backup code
@auth_router.post("/2fa/verify")
def verify_2fa(verify_data: schemas.TOTPVerifyRequest, db: Session = Depends(get_db)):
    verified, used_backup_code = verify_two_factor(db, verify_data.user_id, verify_data.token)
    return {
        "success": True,
        "data": {"verified": verified, "usedBackupCode": used_backup_code}
    }


# Disable 2FA endpoint
@auth_router.post("/2fa/disable")
def disable_2fa(
        disable_data: schemas.TOTPDisableRequest,
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_user)
):
    password_verified = verify_password(disable_data.password, current_user.hashed_password)
    disable_totp(db, current_user, disable_data.token, password_verified)
    return {
        "success": True,
        "message": "Two-factor authentication disabled successfully",
        "data": {}
    }


@auth_router.post("/forgot-password")
def forgot_password(
        body: schemas.ForgotPasswordRequest,
        db: Session = Depends(get_db),
        email_sender: EmailSender = Depends(get_email_sender)
):
    # Same answer whether or not the account exists
    try:
        issue_reset_token(db, body.email, email_sender)
    except EmailDeliveryError:
        logger.exception("password_reset_email_failed")

    return {"success": True, "message": FORGOT_PASSWORD_MESSAGE, "data": {"message": FORGOT_PASSWORD_MESSAGE}}


@auth_router.get("/reset-password")
def check_reset_token(token: Optional[str] = None, db: Session = Depends(get_db)):
    if not token:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing reset token")

    verify_reset_token(db, token)
    return {"success": True, "message": "Token is valid", "data": {"valid": True}}


@auth_router.post("/reset-password")
def apply_password_reset(
        body: schemas.ResetPasswordRequest,
        request: Request,
        db: Session = Depends(get_db),
        email_sender: EmailSender = Depends(get_email_sender)
):
    ip_address, user_agent = _client_meta(request)
    reset_password(db, body.token, body.password, email_sender, ip_address, user_agent)
    return {"success": True, "message": "Password changed successfully", "data": {}}


def _email_verified_response() -> dict:
    return {"success": True, "message": "Email verified. You can now sign in.", "data": {}}


@auth_router.get("/verify-email")
def verify_email_link(token: Optional[str] = None, db: Session = Depends(get_db)):
    if not token:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing verification token")

    verify_email_token(db, token)
    return _email_verified_response()


@auth_router.post("/verify-email")
def verify_email(body: schemas.VerifyEmailRequest, db: Session = Depends(get_db)):
    verify_email_token(db, body.token)
    return _email_verified_response()


@auth_router.post("/verify-email/resend")
def resend_verification_email(
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_user),
        email_sender: EmailSender = Depends(get_email_sender)
):
    if current_user.email_verified:
        raise AuthError("Email is already verified")

    issue_verification_token(db, current_user, email_sender)
    return {"success": True, "message": "Verification email sent", "data": {}}


@auth_router.get("/sessions")
def get_sessions(
        db: Session = Depends(get_db),
        current_session: models.UserSession = Depends(get_current_session)
):
    sessions = []
    for session in list_sessions(db, current_session.user_id):
        item = schemas.SessionOut.model_validate(session)
        item.current = session.id == current_session.id
        sessions.append(item.model_dump(mode="json", by_alias=True))

    return {"success": True, "data": sessions}


@auth_router.delete("/sessions")
def delete_sessions(
        response: Response,
        session_id: Optional[str] = Query(None, alias="sessionId"),
        revoke_all: bool = Query(False, alias="all"),
        db: Session = Depends(get_db),
        current_session: models.UserSession = Depends(get_current_session)
):
    user_id = current_session.user_id
    current_id = current_session.id

    if revoke_all:
        revoke_all_sessions(db, user_id)
        _clear_session_cookie(response)
        return {"success": True, "message": "All sessions were revoked", "data": {}}

    if not session_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing session id")

    revoke_session(db, session_id, user_id)
    if session_id == current_id:
        _clear_session_cookie(response)

    return {"success": True, "message": "Session revoked", "data": {}}
