"""
Session registry: maps each live session to the TCP port its guest listens on.

Ports come from a monotonically increasing counter and are never handed out
twice during the lifetime of the orchestrator, so a late request for a
released session can never reach a newer session's guest.
"""

from __future__ import annotations

import threading

from cloudide.core.constants import DEFAULT_PORT_RANGE_START


class SessionRegistry:
    """Thread-safe session id -> port table.

    Held on ``app.state`` and shared by the gateway (allocate/release) and the
    preview router (lookup).
    """

    __slots__ = ("_lock", "_next_port", "_ports")

    def __init__(self, port_range_start: int = DEFAULT_PORT_RANGE_START) -> None:
        self._lock = threading.Lock()
        self._next_port = port_range_start
        self._ports: dict[str, int] = {}

    def allocate(self, session_id: str) -> int:
        """Assign the next port to a new session.

        Raises:
            ValueError: If the session id is already registered.
        """
        with self._lock:
            if session_id in self._ports:
                raise ValueError(f"Session already registered: {session_id}")
            port = self._next_port
            self._next_port += 1
            self._ports[session_id] = port
            return port

    def lookup(self, session_id: str) -> int | None:
        with self._lock:
            return self._ports.get(session_id)

    def release(self, session_id: str) -> int | None:
        """Forget a session. Unknown ids are ignored.

        Returns:
            The port the session held, or None if it was not registered.
        """
        with self._lock:
            return self._ports.pop(session_id, None)

    def snapshot(self) -> dict[str, int]:
        """Copy of the current table, for introspection."""
        with self._lock:
            return dict(self._ports)

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._ports)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._ports

    def __len__(self) -> int:
        return self.count
