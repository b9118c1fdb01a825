"""FastAPI application for studylib."""

import asyncio
import functools
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from . import db, messages
from ._version import __version__
from .auth import (
    decode_access_token,
    extract_bearer_token,
    hash_password,
    issue_access_token,
    revoke_token,
    verify_password,
)
from .cache import token_blacklist
from .config import get_config
from .conversation import ConversationKey
from .errors import (
    AuthenticationFailed,
    NotFound,
    PermissionDenied,
    StudylibError,
    ValidationFailed,
)
from .metrics import metrics
from .presence import PresenceRegistry, WebSocketConnection
from .schemas import (
    AdminRoleRequest,
    AdminStatusRequest,
    AdminVerifyRequest,
    AnnouncementRequest,
    ChangePasswordRequest,
    EditMessageRequest,
    GlobalMessageRequest,
    JoinFrame,
    LoginRequest,
    RegisterRequest,
    RoomMessageRequest,
    SendMessageFrame,
    SendMessageRequest,
    StatusRequest,
    TokenResponse,
    UpdateProfileRequest,
    parse_frame,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the database and the presence registry."""
    db.init_db()
    app.state.presence = PresenceRegistry()

    yield

    db.close_db()


app = FastAPI(
    title="studylib",
    description="Student library messaging and presence service",
    version=__version__,
    lifespan=lifespan,
)


# --- Request Timing Middleware ---


@app.middleware("http")
async def add_timing_middleware(request: Request, call_next):
    """Middleware to track request timing for metrics."""
    start_time = time.perf_counter()

    response = await call_next(request)

    duration_ms = (time.perf_counter() - start_time) * 1000

    # /api/<group>/... -> <group>
    path = request.url.path
    parts = path.split("/")
    if path.startswith("/api/") and len(parts) > 2 and parts[2]:
        endpoint = parts[2]
    elif path in ("/health", "/metrics"):
        endpoint = path[1:]
    else:
        endpoint = "other"

    metrics.record_request(endpoint, duration_ms)
    response.headers["X-Response-Time-Ms"] = f"{duration_ms:.1f}"

    return response


# --- Error Handlers ---


def _field_errors(errors: list[dict[str, Any]]) -> list[dict[str, str]]:
    """Flatten pydantic error entries into {"field", "message"} pairs."""
    return [
        {
            "field": ".".join(str(part) for part in err["loc"] if part != "body"),
            "message": err["msg"],
        }
        for err in errors
    ]


@app.exception_handler(StudylibError)
async def handle_studylib_error(request: Request, exc: StudylibError):
    content: dict[str, Any] = {"detail": exc.message}
    if isinstance(exc, ValidationFailed) and exc.errors:
        content["errors"] = exc.errors
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": "Validation failed", "errors": _field_errors(list(exc.errors()))},
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception):
    logger.error(f"Unhandled error: {exc}", exc_info=exc)
    detail = "Internal server error" if get_config().is_production else str(exc)
    return JSONResponse(status_code=500, content={"detail": detail})


# --- Auth Helpers ---


def authenticate_token(token: str | None) -> tuple[dict, dict]:
    """Resolve a raw access token to (user, claims)."""
    if not token:
        raise AuthenticationFailed("Access token required")

    claims = decode_access_token(token)
    user = db.get_user(claims["sub"])
    if user is None or not user["is_active"]:
        raise AuthenticationFailed("User not found or deactivated")
    return user, claims


def authenticate(authorization: str | None) -> tuple[dict, dict]:
    token = extract_bearer_token(authorization)
    if not token:
        raise AuthenticationFailed("Authorization header with Bearer token required")
    return authenticate_token(token)


def require_user(authorization: str | None) -> dict:
    user, _ = authenticate(authorization)
    return user


def require_admin(authorization: str | None) -> dict:
    user = require_user(authorization)
    if user["role"] != "admin":
        raise PermissionDenied("Admin access required")
    return user


def _conversation_key(user_id: str, other_id: str) -> ConversationKey:
    if user_id == other_id:
        raise ValidationFailed.for_field("user_id", "You cannot open a conversation with yourself")
    return ConversationKey.of(user_id, other_id)


# --- Async helpers (for use in async def handlers) ---


async def _run_sync(fn, *args):
    """Run a blocking store call off the event loop (threadpool, thread-local connections)."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, fn, *args)


async def _require_user(authorization: str | None) -> dict:
    return await _run_sync(require_user, authorization)


async def _require_admin(authorization: str | None) -> dict:
    return await _run_sync(require_admin, authorization)


def _presence(request: Request | WebSocket) -> PresenceRegistry:
    return request.app.state.presence


async def _fan_out(presence: PresenceRegistry, event: str, message: dict) -> bool:
    """Route a message event to whoever should see it besides the sender."""
    if message["recipient"] is not None:
        return await presence.route_to(message["recipient"]["id"], event, message)
    delivered = await presence.broadcast(event, message, exclude=message["sender"]["id"])
    return delivered > 0


def _attachment(model) -> dict | None:
    return model.model_dump() if model is not None else None


# --- Auth Endpoints ---


@app.post("/api/auth/register", response_model=TokenResponse, status_code=201)
def register(request: RegisterRequest):
    """Create an account and return an access token for it."""
    user = db.create_user(
        name=request.name,
        email=request.email,
        password_hash=hash_password(request.password),
        is_verified=get_config().auto_verify,
    )
    logger.info(f"Registered user {user['id']}")
    token = issue_access_token(user["id"], user["role"])
    return {**token, "user": user}


@app.post("/api/auth/login", response_model=TokenResponse)
def login(request: LoginRequest):
    user = db.get_user_by_email(request.email)
    if user is None or not verify_password(request.password, user["password_hash"]):
        raise AuthenticationFailed("Invalid email or password")
    if not user["is_active"]:
        raise AuthenticationFailed("Account is deactivated")

    db.touch_last_seen(user["id"])
    token = issue_access_token(user["id"], user["role"])
    return {**token, "user": db.get_user(user["id"])}


@app.post("/api/auth/logout")
def logout(authorization: Annotated[str | None, Header()] = None):
    """Revoke the presented token."""
    user, claims = authenticate(authorization)
    revoke_token(claims)
    return {"detail": "Logged out"}


@app.get("/api/auth/me")
def me(authorization: Annotated[str | None, Header()] = None):
    return require_user(authorization)


@app.put("/api/auth/change-password")
def change_password(
    request: ChangePasswordRequest,
    authorization: Annotated[str | None, Header()] = None,
):
    user = require_user(authorization)
    stored = db.get_password_hash(user["id"])
    if stored is None or not verify_password(request.current_password, stored):
        raise ValidationFailed.for_field("current_password", "Current password is incorrect")

    db.set_password_hash(user["id"], hash_password(request.new_password))
    return {"detail": "Password updated"}


# --- User Endpoints ---


@app.get("/api/users")
def list_users(
    search: Annotated[str | None, Query(max_length=100)] = None,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    authorization: Annotated[str | None, Header()] = None,
):
    """List active users other than the caller."""
    user = require_user(authorization)
    filters = {"search": search, "is_active": True, "exclude_id": user["id"]}
    users = db.list_users(**filters, limit=limit, offset=(page - 1) * limit)
    total = db.count_users(**filters)
    return {"users": users, "pagination": messages.pagination(page, limit, total)}


@app.put("/api/users/profile")
def update_profile(
    request: UpdateProfileRequest,
    authorization: Annotated[str | None, Header()] = None,
):
    user = require_user(authorization)
    db.update_user_profile(
        user["id"], name=request.name, bio=request.bio, avatar_url=request.avatar_url
    )
    return db.get_user(user["id"])


@app.delete("/api/users/account")
async def deactivate_account(
    http_request: Request,
    authorization: Annotated[str | None, Header()] = None,
):
    """Soft-deactivate the caller, revoke the presented token and take them offline."""
    user, claims = await _run_sync(authenticate, authorization)
    await _run_sync(db.set_user_active, user["id"], False)
    revoke_token(claims)
    await _presence(http_request).remove_user(user["id"])
    logger.info(f"User {user['id']} deactivated their account")
    return {"detail": "Account deactivated"}


@app.get("/api/users/{user_id}")
def get_user_profile(user_id: str, authorization: Annotated[str | None, Header()] = None):
    require_user(authorization)
    user = db.get_user(user_id)
    if user is None or not user["is_active"]:
        raise NotFound("User not found")
    return user


# --- Message Endpoints ---
# Fixed paths are declared before /api/messages/{user_id}.


@app.get("/api/messages/conversations")
def get_conversations(authorization: Annotated[str | None, Header()] = None):
    """Most recent message per counterpart, with unread counts."""
    user = require_user(authorization)
    return {"conversations": messages.list_conversations(user["id"])}


@app.get("/api/messages/unread/count")
def get_unread_count(authorization: Annotated[str | None, Header()] = None):
    user = require_user(authorization)
    return {"unread_count": messages.unread_count(user["id"])}


@app.get("/api/messages/room/{room}")
def get_room_history(
    room: str,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    authorization: Annotated[str | None, Header()] = None,
):
    require_user(authorization)
    return messages.get_room_messages(room, page=page, limit=limit)


@app.post("/api/messages/room", status_code=201)
async def send_room_message(
    request: RoomMessageRequest,
    http_request: Request,
    authorization: Annotated[str | None, Header()] = None,
):
    """Post to a room and broadcast ``room-message`` to everyone else online."""
    user = await _require_user(authorization)
    message = await _run_sync(
        functools.partial(
            messages.send,
            user["id"],
            body=request.body,
            room=request.room,
            attachment=_attachment(request.attachment),
        )
    )
    await _fan_out(_presence(http_request), "room-message", message)
    return message


@app.put("/api/messages/read/{user_id}")
async def mark_conversation_read(
    user_id: str,
    http_request: Request,
    authorization: Annotated[str | None, Header()] = None,
):
    """Mark messages from ``user_id`` read and tell them through ``messagesRead``."""
    user = await _require_user(authorization)
    key = _conversation_key(user["id"], user_id)
    updated = await _run_sync(messages.mark_read, key, user["id"])

    if updated:
        await _presence(http_request).route_to(
            user_id, "messagesRead", {"reader_id": user["id"], "count": updated}
        )
    return {"updated": updated}


def _open_conversation(key: ConversationKey, reader_id: str, page: int, limit: int) -> dict:
    # Mark first so the returned page already reflects the read state
    updated = messages.mark_read(key, reader_id)
    history = messages.get_conversation(key, reader_id, page=page, limit=limit)
    return {**history, "marked_read": updated}


@app.get("/api/messages/{user_id}")
async def get_conversation(
    user_id: str,
    http_request: Request,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    authorization: Annotated[str | None, Header()] = None,
):
    """Conversation history with ``user_id``. Opening it marks incoming messages read."""
    user = await _require_user(authorization)
    key = _conversation_key(user["id"], user_id)
    result = await _run_sync(_open_conversation, key, user["id"], page, limit)

    updated = result.pop("marked_read")
    if updated:
        await _presence(http_request).route_to(
            user_id, "messagesRead", {"reader_id": user["id"], "count": updated}
        )
    return result


@app.post("/api/messages", status_code=201)
async def send_direct_message(
    request: SendMessageRequest,
    http_request: Request,
    authorization: Annotated[str | None, Header()] = None,
):
    """Send a direct message. The recipient gets ``newMessage`` if connected."""
    user = await _require_user(authorization)
    message = await _run_sync(
        functools.partial(
            messages.send,
            user["id"],
            body=request.body,
            to=request.to,
            attachment=_attachment(request.attachment),
        )
    )
    await _fan_out(_presence(http_request), "newMessage", message)
    return message


@app.put("/api/messages/{mid}")
async def edit_message(
    mid: str,
    request: EditMessageRequest,
    http_request: Request,
    authorization: Annotated[str | None, Header()] = None,
):
    user = await _require_user(authorization)
    message = await _run_sync(messages.edit, mid, user["id"], request.body)
    await _fan_out(_presence(http_request), "messageEdited", message)
    return message


@app.delete("/api/messages/{mid}")
async def delete_message(
    mid: str,
    http_request: Request,
    authorization: Annotated[str | None, Header()] = None,
):
    user = await _require_user(authorization)
    message = await _run_sync(messages.soft_delete, mid, user["id"])
    await _fan_out(_presence(http_request), "messageDeleted", message)
    return message


# --- Chat Endpoints ---


@app.get("/api/chat/users")
async def get_chat_users(
    http_request: Request,
    authorization: Annotated[str | None, Header()] = None,
):
    """Verified, active users other than the caller, with their online flag."""
    user = await _require_user(authorization)
    users = await _run_sync(
        functools.partial(
            db.list_users, is_active=True, is_verified=True, exclude_id=user["id"], limit=500
        )
    )
    presence = _presence(http_request)
    return {"users": [{**u, "is_online": presence.is_online(u["id"])} for u in users]}


@app.put("/api/chat/status")
def update_status(request: StatusRequest, authorization: Annotated[str | None, Header()] = None):
    user = require_user(authorization)
    db.set_user_status(user["id"], request.status)
    return db.get_user(user["id"])


@app.get("/api/chat/global")
def get_global_messages(
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    authorization: Annotated[str | None, Header()] = None,
):
    require_user(authorization)
    return messages.get_room_messages(get_config().global_room, page=page, limit=limit)


@app.post("/api/chat/global", status_code=201)
async def send_global_message(
    request: GlobalMessageRequest,
    http_request: Request,
    authorization: Annotated[str | None, Header()] = None,
):
    user = await _require_user(authorization)
    message = await _run_sync(
        functools.partial(
            messages.send,
            user["id"],
            body=request.body,
            room=get_config().global_room,
            attachment=_attachment(request.attachment),
        )
    )
    await _fan_out(_presence(http_request), "room-message", message)
    return message


# --- Admin Endpoints ---


@app.get("/api/admin/stats")
async def admin_stats(
    http_request: Request,
    authorization: Annotated[str | None, Header()] = None,
):
    await _require_admin(authorization)
    users = await _run_sync(db.user_stats)
    message_counts = await _run_sync(db.message_stats)
    return {
        "users": users,
        "messages": message_counts,
        "online_users": len(_presence(http_request)),
    }


@app.get("/api/admin/users")
def admin_list_users(
    search: Annotated[str | None, Query(max_length=100)] = None,
    role: Annotated[str | None, Query(pattern="^(student|admin)$")] = None,
    is_active: Annotated[bool | None, Query()] = None,
    is_verified: Annotated[bool | None, Query()] = None,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    authorization: Annotated[str | None, Header()] = None,
):
    require_admin(authorization)
    filters = {"search": search, "role": role, "is_active": is_active, "is_verified": is_verified}
    users = db.list_users(**filters, limit=limit, offset=(page - 1) * limit)
    total = db.count_users(**filters)
    return {"users": users, "pagination": messages.pagination(page, limit, total)}


def _require_target(user_id: str) -> dict:
    target = db.get_user(user_id)
    if target is None:
        raise NotFound("User not found")
    return target


@app.put("/api/admin/users/{user_id}/status")
async def admin_set_status(
    user_id: str,
    request: AdminStatusRequest,
    http_request: Request,
    authorization: Annotated[str | None, Header()] = None,
):
    """Activate or deactivate a user. Admins cannot change their own status.

    A deactivated user is taken offline immediately.
    """
    admin = await _require_admin(authorization)
    await _run_sync(_require_target, user_id)
    if user_id == admin["id"]:
        raise ValidationFailed("You cannot change your own account status")

    await _run_sync(db.set_user_active, user_id, request.is_active)
    if not request.is_active:
        await _presence(http_request).remove_user(user_id)
    logger.info(f"Admin {admin['id']} set is_active={request.is_active} for {user_id}")
    return await _run_sync(db.get_user, user_id)


@app.put("/api/admin/users/{user_id}/role")
def admin_set_role(
    user_id: str,
    request: AdminRoleRequest,
    authorization: Annotated[str | None, Header()] = None,
):
    admin = require_admin(authorization)
    _require_target(user_id)
    if user_id == admin["id"] and request.role != "admin":
        raise ValidationFailed("You cannot remove your own admin role")

    db.set_user_role(user_id, request.role)
    logger.info(f"Admin {admin['id']} set role={request.role} for {user_id}")
    return db.get_user(user_id)


@app.put("/api/admin/users/{user_id}/verify")
def admin_set_verified(
    user_id: str,
    request: AdminVerifyRequest,
    authorization: Annotated[str | None, Header()] = None,
):
    require_admin(authorization)
    _require_target(user_id)
    db.set_user_verified(user_id, request.is_verified)
    return db.get_user(user_id)


@app.post("/api/admin/announcements", status_code=201)
async def admin_announce(
    request: AnnouncementRequest,
    http_request: Request,
    authorization: Annotated[str | None, Header()] = None,
):
    """Post a system message to a room (the global room by default) and broadcast it."""
    admin = await _require_admin(authorization)
    message = await _run_sync(
        messages.post_system_message,
        request.room or get_config().global_room,
        request.body,
        admin["id"],
    )
    await _presence(http_request).broadcast("room-message", message)
    return message


# --- Real-time ---


async def _send_error(connection: WebSocketConnection, exc: StudylibError) -> None:
    data: dict[str, Any] = {"message": exc.message}
    if isinstance(exc, ValidationFailed) and exc.errors:
        data["errors"] = exc.errors
    await connection.send("error", data)


async def _handle_send_frame(
    presence: PresenceRegistry,
    connection: WebSocketConnection,
    user_id: str,
    frame: SendMessageFrame,
) -> None:
    message = await _run_sync(
        functools.partial(
            messages.send,
            user_id,
            body=frame.body,
            to=frame.to,
            room=frame.room,
            attachment=_attachment(frame.attachment),
        )
    )
    event = "newMessage" if message["recipient"] is not None else "room-message"
    delivered = await _fan_out(presence, event, message)
    await connection.send("messageSent", {"message": message, "delivered": delivered})


@app.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Annotated[str | None, Query()] = None,
):
    """Real-time channel.

    Authenticate with ``?token=<access token>``, then send ``join`` to go
    online. Frames are JSON: ``{"event": ..., ...}`` inbound and
    ``{"event": ..., "data": ...}`` outbound.

    The token is checked again for every frame, so a logout or a
    deactivation closes the socket (1008) on its next frame.
    """
    try:
        user, _ = await _run_sync(authenticate_token, token)
    except AuthenticationFailed as e:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=e.message)
        return

    await websocket.accept()
    presence = _presence(websocket)
    connection = WebSocketConnection(websocket)
    user_id = user["id"]
    joined = False

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                await _run_sync(authenticate_token, token)
            except AuthenticationFailed as e:
                logger.info(f"Closing socket {connection.id} for {user_id}: {e.message}")
                await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=e.message)
                break

            try:
                frame = parse_frame(json.loads(raw))
            except ValidationError as e:
                await connection.send(
                    "error", {"message": "Invalid event", "errors": _field_errors(e.errors())}
                )
                continue
            except ValueError:
                await connection.send("error", {"message": "Frames must be JSON objects"})
                continue

            if isinstance(frame, JoinFrame):
                if frame.user_id is not None and frame.user_id != user_id:
                    await connection.send("error", {"message": "user_id does not match token"})
                    continue
                await presence.register(user_id, connection)
                await _run_sync(db.set_user_status, user_id, "online")
                joined = True
                await connection.send(
                    "joined", {"user_id": user_id, "online_users": presence.online_users()}
                )
                continue

            if not joined:
                await connection.send("error", {"message": "Send a join event first"})
                continue

            try:
                if isinstance(frame, SendMessageFrame):
                    await _handle_send_frame(presence, connection, user_id, frame)
                else:
                    await presence.route_to(
                        frame.to, "userTyping", {"user_id": user_id, "is_typing": frame.is_typing}
                    )
            except StudylibError as e:
                await _send_error(connection, e)
    except WebSocketDisconnect:
        pass
    finally:
        if joined and await presence.unregister(connection.id):
            await _run_sync(db.set_user_status, user_id, "offline")


# --- Health Check ---


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "version": __version__}


@app.get("/metrics")
def get_metrics(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
):
    """Get application metrics. Requires admin authentication."""
    require_admin(authorization)

    return {
        **metrics.to_dict(),
        "online_users": len(_presence(request)),
        "caches": {"token_blacklist": token_blacklist.stats()},
    }
