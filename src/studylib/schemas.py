"""Request bodies and websocket frames.

REST bodies are plain pydantic models. Inbound websocket frames form a union
discriminated on ``event`` and are parsed with ``parse_frame``.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    EmailStr,
    Field,
    StringConstraints,
    TypeAdapter,
)

from .auth import MIN_PASSWORD_LENGTH


def _strip(value: Any) -> Any:
    return value.strip() if isinstance(value, str) else value


Name = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=50)]
Email = Annotated[EmailStr, BeforeValidator(_strip)]


class _Stripped(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)


# --- Auth / users ---
# Passwords are never stripped, so login compares exactly what was hashed.


class RegisterRequest(BaseModel):
    name: Name
    email: Email
    password: str = Field(min_length=MIN_PASSWORD_LENGTH)


class LoginRequest(BaseModel):
    email: Email
    password: str = Field(min_length=1)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1)
    new_password: str = Field(min_length=MIN_PASSWORD_LENGTH)


class UpdateProfileRequest(_Stripped):
    name: Name | None = None
    bio: str | None = Field(default=None, max_length=500)
    avatar_url: str | None = Field(default=None, max_length=500)


class TokenResponse(BaseModel):
    token: str
    expires_at: int
    user: dict[str, Any]


# --- Messages ---


class Attachment(BaseModel):
    url: str = Field(min_length=1)
    filename: str = Field(min_length=1, max_length=255)
    content_type: str | None = None
    size: int | None = Field(default=None, ge=0)


class SendMessageRequest(BaseModel):
    to: str = Field(min_length=1)
    body: str | None = None
    attachment: Attachment | None = None


class RoomMessageRequest(BaseModel):
    room: str = Field(min_length=1, max_length=100)
    body: str | None = None
    attachment: Attachment | None = None


class GlobalMessageRequest(BaseModel):
    body: str | None = None
    attachment: Attachment | None = None


class EditMessageRequest(BaseModel):
    body: str


class StatusRequest(BaseModel):
    status: Literal["online", "offline", "away"]


# --- Admin ---


class AdminStatusRequest(BaseModel):
    is_active: bool


class AdminRoleRequest(BaseModel):
    role: Literal["student", "admin"]


class AdminVerifyRequest(BaseModel):
    is_verified: bool = True


class AnnouncementRequest(BaseModel):
    body: str = Field(min_length=1)
    room: str | None = None


# --- Websocket frames ---


class JoinFrame(BaseModel):
    event: Literal["join"]
    user_id: str | None = None


class SendMessageFrame(BaseModel):
    event: Literal["sendMessage"]
    to: str | None = None
    room: str | None = None
    body: str | None = None
    attachment: Attachment | None = None


class TypingFrame(BaseModel):
    event: Literal["typing"]
    to: str = Field(min_length=1)
    is_typing: bool = True


InboundFrame = Annotated[
    Union[JoinFrame, SendMessageFrame, TypingFrame],
    Field(discriminator="event"),
]

_inbound_frame = TypeAdapter(InboundFrame)


def parse_frame(payload: Any) -> JoinFrame | SendMessageFrame | TypingFrame:
    """Validate one decoded inbound frame. Raises pydantic.ValidationError."""
    return _inbound_frame.validate_python(payload)
