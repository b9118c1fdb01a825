"""Message service: validation and business rules over the message store.

Direct messages are addressed to a user and grouped by ``ConversationKey``.
Room messages are addressed to a named room; the global chat is the room
named by ``ServerConfig.global_room``.

Every function raises ``studylib.errors`` types; the API maps them to
responses. Real-time fan-out is the caller's job.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any

from . import db
from .config import get_config
from .conversation import ConversationKey
from .errors import NotFound, PermissionDenied, ValidationFailed

logger = logging.getLogger(__name__)

TOMBSTONE = "This message was deleted"

MAX_PAGE_SIZE = 100


def _clean_body(body: str | None) -> str:
    text = (body or "").strip()
    limit = get_config().max_message_length
    if len(text) > limit:
        raise ValidationFailed.for_field("body", f"Message cannot exceed {limit} characters")
    return text


def _attachment_type(attachment: dict[str, Any]) -> str:
    return "image" if (attachment.get("content_type") or "").startswith("image/") else "file"


def _default_body(attachment: dict[str, Any]) -> str:
    """Body for an attachment sent without text."""
    if _attachment_type(attachment) == "image":
        return "Image"
    return attachment.get("filename") or "File"


def _page(page: int, limit: int) -> tuple[int, int]:
    if page < 1:
        raise ValidationFailed.for_field("page", "page must be at least 1")
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationFailed.for_field("limit", f"limit must be between 1 and {MAX_PAGE_SIZE}")
    return limit, (page - 1) * limit


def pagination(page: int, limit: int, total: int) -> dict[str, Any]:
    return {"page": page, "limit": limit, "total": total, "has_more": page * limit < total}


def send(
    sender_id: str,
    body: str | None = None,
    to: str | None = None,
    room: str | None = None,
    attachment: dict[str, Any] | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Persist a message addressed to exactly one of a user (``to``) or a ``room``.

    Returns the stored message with sender and recipient display fields.
    """
    if (to is None) == (room is None):
        raise ValidationFailed.for_field("to", "Provide exactly one of 'to' or 'room'")

    text = _clean_body(body)
    if not text and not attachment:
        raise ValidationFailed.for_field("body", "Message cannot be empty")

    if attachment:
        message_type = _attachment_type(attachment)
        text = text or _default_body(attachment)
    else:
        message_type = "text"

    sender = db.get_user(sender_id, conn=conn)
    if sender is None or not sender["is_active"]:
        raise PermissionDenied("Your account is deactivated")

    if to is not None:
        if to == sender_id:
            raise ValidationFailed.for_field("to", "You cannot send a message to yourself")
        recipient = db.get_user(to, conn=conn)
        if recipient is None or not recipient["is_active"]:
            raise NotFound("Recipient not found")
    else:
        room = room.strip()
        if not room:
            raise ValidationFailed.for_field("room", "Room name cannot be empty")

    message = db.insert_message(
        sender_id,
        text,
        recipient_id=to,
        room=room,
        message_type=message_type,
        attachment=attachment,
        conn=conn,
    )
    logger.debug(f"Stored message {message['mid']} from {sender_id}")
    return message


def post_system_message(
    room: str, body: str, sender_id: str, conn: sqlite3.Connection | None = None
) -> dict:
    """Post a ``system`` message (announcement) to a room on behalf of an admin."""
    text = _clean_body(body)
    if not text:
        raise ValidationFailed.for_field("body", "Message cannot be empty")
    room = room.strip()
    if not room:
        raise ValidationFailed.for_field("room", "Room name cannot be empty")
    return db.insert_message(sender_id, text, room=room, message_type="system", conn=conn)


def _owned_message(mid: str, requester_id: str, action: str, conn: sqlite3.Connection | None) -> dict:
    message = db.get_message(mid, conn=conn)
    if message is None:
        raise NotFound("Message not found")
    if message["sender"]["id"] != requester_id:
        raise PermissionDenied(f"You can only {action} your own messages")
    return message


def edit(
    mid: str, requester_id: str, body: str | None, conn: sqlite3.Connection | None = None
) -> dict:
    """Replace the body of a live message. Only its sender may edit it."""
    message = _owned_message(mid, requester_id, "edit", conn)
    if message["is_deleted"]:
        raise ValidationFailed("Cannot edit a deleted message")

    text = _clean_body(body)
    if not text:
        raise ValidationFailed.for_field("body", "Message cannot be empty")

    if not db.update_message_body(mid, requester_id, text, conn=conn):
        # Deleted between the read and the update
        raise ValidationFailed("Cannot edit a deleted message")

    updated = db.get_message(mid, conn=conn)
    assert updated is not None
    return updated


def soft_delete(mid: str, requester_id: str, conn: sqlite3.Connection | None = None) -> dict:
    """Tombstone a message. The record stays queryable by id."""
    _owned_message(mid, requester_id, "delete", conn)
    db.soft_delete_message(mid, requester_id, TOMBSTONE, conn=conn)

    deleted = db.get_message(mid, conn=conn)
    assert deleted is not None
    return deleted


def mark_read(key: ConversationKey, reader_id: str, conn: sqlite3.Connection | None = None) -> int:
    """Mark every unread message addressed to ``reader_id`` in the conversation read."""
    if not key.includes(reader_id):
        raise PermissionDenied("You are not part of this conversation")
    return db.mark_conversation_read(key, reader_id, conn=conn)


def list_conversations(user_id: str, conn: sqlite3.Connection | None = None) -> list[dict]:
    return db.list_conversations(user_id, conn=conn)


def get_conversation(
    key: ConversationKey,
    reader_id: str,
    page: int = 1,
    limit: int = 50,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """A page of a conversation's history. Page 1 holds the newest messages."""
    if not key.includes(reader_id):
        raise PermissionDenied("You are not part of this conversation")
    if db.get_user(key.other(reader_id), conn=conn) is None:
        raise NotFound("User not found")

    size, offset = _page(page, limit)
    messages = db.get_conversation_messages(key, limit=size, offset=offset, conn=conn)
    total = db.count_conversation_messages(key, conn=conn)
    return {"messages": messages, "pagination": pagination(page, size, total)}


def get_room_messages(
    room: str, page: int = 1, limit: int = 50, conn: sqlite3.Connection | None = None
) -> dict:
    size, offset = _page(page, limit)
    messages = db.get_room_messages(room, limit=size, offset=offset, conn=conn)
    total = db.count_room_messages(room, conn=conn)
    return {"messages": messages, "pagination": pagination(page, size, total)}


def unread_count(user_id: str, conn: sqlite3.Connection | None = None) -> int:
    return db.count_unread(user_id, conn=conn)
