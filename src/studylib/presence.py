"""Presence registry for real-time chat.

Tracks which users currently hold an open real-time connection and routes
events to them. Each user has at most one active connection: registering a
new one supersedes the old one.

Architecture:
    - Connection ABC is the transport seam (WebSocketConnection in production,
      recording fakes in tests)
    - PresenceRegistry keeps user -> connection and a connection -> user
      back-reference so a closing socket can be unregistered by its id alone
    - Delivery is fire-and-forget: an offline recipient or a failing socket is
      an expected outcome, counted in metrics and never raised to the caller

The registry is not thread-safe. It is owned by the running application
(``app.state.presence``) and only touched from the event loop.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any

from fastapi import WebSocket

from .metrics import metrics

logger = logging.getLogger(__name__)


class Connection(ABC):
    """A live real-time connection able to receive events."""

    id: str

    @abstractmethod
    async def send(self, event: str, data: Any) -> None:
        """Deliver one event. May raise if the transport is gone."""


class WebSocketConnection(Connection):
    """Sends events as ``{"event": ..., "data": ...}`` JSON frames."""

    def __init__(self, websocket: WebSocket, connection_id: str | None = None) -> None:
        self.websocket = websocket
        self.id = connection_id or uuid.uuid4().hex

    async def send(self, event: str, data: Any) -> None:
        await self.websocket.send_json({"event": event, "data": data})

    def __repr__(self) -> str:
        return f"WebSocketConnection({self.id})"


class PresenceRegistry:
    """In-memory map from user id to that user's active connection."""

    def __init__(self) -> None:
        self._by_user: dict[str, Connection] = {}
        self._owner: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._by_user)

    def is_online(self, user_id: str) -> bool:
        return user_id in self._by_user

    def online_users(self) -> list[str]:
        return sorted(self._by_user)

    def connection_for(self, user_id: str) -> Connection | None:
        return self._by_user.get(user_id)

    async def register(self, user_id: str, connection: Connection) -> Connection | None:
        """Make ``connection`` the user's active connection.

        Announces ``userOnline`` to everyone else. Returns the connection that
        was superseded, if any.
        """
        previous = self._by_user.get(user_id)
        if previous is not None and previous.id != connection.id:
            self._owner.pop(previous.id, None)
            logger.info(f"User {user_id} reconnected, superseding {previous.id}")

        self._by_user[user_id] = connection
        self._owner[connection.id] = user_id
        logger.debug(f"Registered {connection.id} for {user_id} ({len(self)} online)")

        await self.broadcast("userOnline", {"user_id": user_id}, exclude=user_id)
        return previous

    async def unregister(self, connection_id: str) -> str | None:
        """Forget a closed connection.

        Returns the user that went offline, or None when the connection was
        unknown or already superseded by a newer one for the same user.
        """
        user_id = self._owner.pop(connection_id, None)
        if user_id is None:
            return None

        current = self._by_user.get(user_id)
        if current is None or current.id != connection_id:
            return None

        await self._drop(user_id)
        return user_id

    async def remove_user(self, user_id: str) -> bool:
        """Take a user offline regardless of which connection they hold.

        Used when the account stops being allowed to chat. The socket itself
        stays open until its next frame fails authentication.
        """
        connection = self._by_user.get(user_id)
        if connection is None:
            return False
        self._owner.pop(connection.id, None)
        await self._drop(user_id)
        return True

    async def _drop(self, user_id: str) -> None:
        connection = self._by_user.pop(user_id)
        logger.debug(f"Unregistered {connection.id} for {user_id} ({len(self)} online)")
        await self.broadcast("userOffline", {"user_id": user_id})

    async def route_to(self, user_id: str, event: str, data: Any) -> bool:
        """Deliver an event to one user if connected. Returns whether it was delivered."""
        connection = self._by_user.get(user_id)
        if connection is None:
            metrics.record_delivery(event, False)
            return False

        delivered = await self._deliver(connection, event, data)
        metrics.record_delivery(event, delivered)
        return delivered

    async def broadcast(self, event: str, data: Any, exclude: str | None = None) -> int:
        """Deliver an event to every connected user except ``exclude``.

        Returns the number of successful deliveries.
        """
        delivered = 0
        for user_id, connection in list(self._by_user.items()):
            if user_id == exclude:
                continue
            if await self._deliver(connection, event, data):
                delivered += 1
        return delivered

    async def _deliver(self, connection: Connection, event: str, data: Any) -> bool:
        try:
            await connection.send(event, data)
            return True
        except Exception:
            logger.warning(f"Failed to deliver {event} to {connection.id}", exc_info=True)
            return False
