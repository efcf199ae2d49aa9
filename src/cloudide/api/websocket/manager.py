from __future__ import annotations

import asyncio
import contextlib
import time

from typing import Any

from fastapi import WebSocket

from cloudide.api.websocket.errors import WSCloseCode
from cloudide.models.event_models import ServerShutdown
from cloudide.utils import metrics
from cloudide.utils.logger import logger


class WebSocketManager:
    """Manage active editor connections (one WebSocket per session) with idle timeout and connection limits."""

    def __init__(
        self,
        idle_timeout_seconds: float = 1800.0,
        max_connections: int = 100,
    ) -> None:
        """Initialize the WebSocket manager.

        Args:
            idle_timeout_seconds: Close connections idle longer than this (default 30 min)
            max_connections: Maximum total connections allowed
        """
        self.connections: dict[str, WebSocket] = {}
        self.last_activity: dict[str, float] = {}
        self.idle_timeout = idle_timeout_seconds
        self.max_connections = max_connections
        self._lock = asyncio.Lock()
        self._send_locks: dict[str, asyncio.Lock] = {}
        self._idle_checker_task: asyncio.Task[None] | None = None
        self._shutting_down = False

    async def connect(self, websocket: WebSocket, session_id: str) -> bool:
        """Accept and register a WebSocket connection.

        Returns:
            True if connection was accepted, False if rejected due to limits
        """
        async with self._lock:
            if self._shutting_down:
                logger.warning(f"Rejecting connection during shutdown for session {session_id}")
                return False

            if len(self.connections) >= self.max_connections:
                logger.warning(f"Rejecting connection: max connections ({self.max_connections}) reached")
                return False

            await websocket.accept()

            self.connections[session_id] = websocket
            self.last_activity[session_id] = time.monotonic()
            self._send_locks[session_id] = asyncio.Lock()

        metrics.ws_connections_active.inc()
        metrics.ws_connections_total.inc()
        logger.info(f"WebSocket connected for session {session_id} (total: {self.connection_count})")
        return True

    async def disconnect(self, session_id: str) -> None:
        """Remove a WebSocket connection. Unknown sessions are ignored."""
        async with self._lock:
            removed = self.connections.pop(session_id, None)
            self.last_activity.pop(session_id, None)
            self._send_locks.pop(session_id, None)
        if removed is not None:
            metrics.ws_connections_active.dec()

    async def touch(self, session_id: str) -> None:
        """Update last activity time for a connection."""
        async with self._lock:
            if session_id in self.last_activity:
                self.last_activity[session_id] = time.monotonic()

    async def send(self, session_id: str, message: dict[str, Any]) -> bool:
        """Send a JSON message to a session's connection.

        Returns:
            True if the message was written, False if the connection is gone
        """
        websocket = self.connections.get(session_id)
        send_lock = self._send_locks.get(session_id)
        if websocket is None or send_lock is None:
            return False
        try:
            async with send_lock:
                await websocket.send_json(message)
        except Exception as e:
            logger.debug(f"Send to session {session_id} failed: {e}")
            await self.disconnect(session_id)
            return False
        metrics.ws_messages_total.labels(direction="outbound").inc()
        return True

    async def broadcast(self, message: dict[str, Any]) -> None:
        """Broadcast message to all connected clients."""
        for session_id in list(self.connections.keys()):
            await self.send(session_id, message)

    def is_connected(self, session_id: str) -> bool:
        return session_id in self.connections

    async def start_idle_checker(self) -> None:
        """Start background task to close idle connections."""
        if self._idle_checker_task is None:
            self._idle_checker_task = asyncio.create_task(self._check_idle_connections())
            logger.info(f"WebSocket idle checker started (timeout: {self.idle_timeout}s)")

    async def stop_idle_checker(self) -> None:
        """Stop the idle checker background task."""
        if self._idle_checker_task:
            self._idle_checker_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._idle_checker_task
            self._idle_checker_task = None
            logger.info("WebSocket idle checker stopped")

    async def _check_idle_connections(self) -> None:
        """Periodically check and close idle connections."""
        check_interval = min(60.0, self.idle_timeout / 2)  # Check at least every minute
        while True:
            await asyncio.sleep(check_interval)
            await self._close_idle_connections()

    async def _close_idle_connections(self) -> None:
        """Close connections that have been idle too long.

        Closing the socket ends the gateway's receive loop, which tears the session down.
        """
        now = time.monotonic()
        async with self._lock:
            to_close = [
                (session_id, ws)
                for session_id, ws in self.connections.items()
                if now - self.last_activity.get(session_id, now) > self.idle_timeout
            ]

        # Close outside the lock to avoid deadlock
        for session_id, ws in to_close:
            logger.info(f"Closing idle WebSocket for session {session_id}")
            with contextlib.suppress(Exception):
                await ws.close(code=WSCloseCode.IDLE_TIMEOUT, reason="Idle timeout")
            await self.disconnect(session_id)

    async def graceful_shutdown(self, timeout: float = 10.0) -> None:
        """Gracefully shutdown all WebSocket connections.

        Args:
            timeout: Maximum time to wait for connections to close
        """
        self._shutting_down = True
        logger.info(f"Initiating graceful WebSocket shutdown (timeout: {timeout}s)")

        await self.stop_idle_checker()

        # Notify all clients of shutdown
        await self.broadcast(ServerShutdown().to_dict())

        # Give clients a moment to receive the message
        await asyncio.sleep(0.5)

        async with self._lock:
            all_connections = list(self.connections.items())

        async def close_connection(session_id: str, ws: WebSocket) -> None:
            with contextlib.suppress(Exception):
                await ws.close(code=WSCloseCode.GOING_AWAY, reason="Server shutdown")
            await self.disconnect(session_id)

        if all_connections:
            close_tasks = [close_connection(sid, ws) for sid, ws in all_connections]
            try:
                await asyncio.wait_for(asyncio.gather(*close_tasks), timeout=timeout)
            except TimeoutError:
                logger.warning(f"Timeout closing {len(all_connections)} WebSocket connections")

        logger.info(f"WebSocket shutdown complete (closed {len(all_connections)} connections)")

    @property
    def connection_count(self) -> int:
        """Total number of active connections."""
        return len(self.connections)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def get_stats(self) -> dict[str, Any]:
        """Get connection statistics."""
        return {
            "total_connections": self.connection_count,
            "max_connections": self.max_connections,
            "idle_timeout": self.idle_timeout,
            "shutting_down": self._shutting_down,
        }
