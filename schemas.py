from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, field_validator
from pydantic.alias_generators import to_camel

from models import UserRole


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _require_password_length(value: str) -> str:
    if len(value) < 8:
        raise ValueError("Password must be at least 8 characters")
    return value


def _require_token(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("Token is required")
    return value


class UserBase(CamelModel):
    email: EmailStr


class UserCreate(UserBase):
    name: str
    password: str

    @field_validator("name")
    @classmethod
    def name_length(cls, value: str) -> str:
        value = value.strip()
        if len(value) < 2:
            raise ValueError("Name must be at least 2 characters")
        return value

    password_length = field_validator("password")(_require_password_length)


class UserLogin(UserBase):
    password: str
    otp_code: Optional[str] = None


class UserOut(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: str
    name: Optional[str] = None
    email: str
    role: UserRole
    email_verified: Optional[datetime] = None
    two_factor_enabled: bool
    created_at: datetime


class TOTPEnableRequest(CamelModel):
    token: str

    @field_validator("token")
    @classmethod
    def six_digits(cls, value: str) -> str:
        value = value.strip()
        if len(value) != 6 or not value.isdigit():
            raise ValueError("Code must be 6 digits")
        return value


class TOTPVerifyRequest(CamelModel):
    user_id: str
    token: str

    @field_validator("token")
    @classmethod
    def code_required(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Code is required")
        return value


class TOTPDisableRequest(CamelModel):
    password: str
    token: str


class ForgotPasswordRequest(UserBase):
    pass


class ResetPasswordRequest(CamelModel):
    token: str
    password: str

    token_required = field_validator("token")(_require_token)
    password_length = field_validator("password")(_require_password_length)


class VerifyEmailRequest(CamelModel):
    token: str

    token_required = field_validator("token")(_require_token)


class SessionOut(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: str
    created_at: datetime
    last_active_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: Optional[str] = None
    current: bool = False
