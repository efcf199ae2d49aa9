"""Tests for WebSocket manager.

Tests connection registration, limits, message delivery, idle timeout and shutdown.
"""

from __future__ import annotations

import asyncio

from unittest.mock import AsyncMock, Mock

import pytest

from cloudide.api.websocket.errors import WSCloseCode
from cloudide.api.websocket.manager import WebSocketManager


def _mock_ws() -> Mock:
    ws = Mock()
    ws.accept = AsyncMock()
    ws.send_json = AsyncMock()
    ws.close = AsyncMock()
    return ws


class TestWebSocketManagerConnection:
    """Tests for WebSocket connection lifecycle."""

    @pytest.mark.asyncio
    async def test_connect_new_session(self) -> None:
        """Test connecting a WebSocket to a new session."""
        manager = WebSocketManager()
        mock_ws = _mock_ws()

        assert await manager.connect(mock_ws, "sess1")

        mock_ws.accept.assert_called_once()
        assert manager.connections["sess1"] is mock_ws
        assert manager.is_connected("sess1")
        assert manager.connection_count == 1

    @pytest.mark.asyncio
    async def test_connection_limit(self) -> None:
        """Connections beyond the limit are rejected without being accepted."""
        manager = WebSocketManager(max_connections=1)
        first, second = _mock_ws(), _mock_ws()

        assert await manager.connect(first, "sess1")
        assert not await manager.connect(second, "sess2")

        second.accept.assert_not_called()
        assert not manager.is_connected("sess2")

    @pytest.mark.asyncio
    async def test_rejects_during_shutdown(self) -> None:
        manager = WebSocketManager()
        await manager.graceful_shutdown(timeout=1)

        mock_ws = _mock_ws()
        assert not await manager.connect(mock_ws, "late")
        mock_ws.accept.assert_not_called()

    @pytest.mark.asyncio
    async def test_disconnect(self) -> None:
        manager = WebSocketManager()
        await manager.connect(_mock_ws(), "sess1")

        await manager.disconnect("sess1")
        await manager.disconnect("sess1")

        assert manager.connection_count == 0
        assert "sess1" not in manager.last_activity


class TestWebSocketManagerSend:
    """Tests for WebSocket message sending."""

    @pytest.mark.asyncio
    async def test_send_message_to_session(self) -> None:
        manager = WebSocketManager()
        mock_ws = _mock_ws()
        message = {"type": "output", "data": "hi"}

        await manager.connect(mock_ws, "sess1")
        assert await manager.send("sess1", message)

        mock_ws.send_json.assert_called_once_with(message)

    @pytest.mark.asyncio
    async def test_send_to_unknown_session(self) -> None:
        manager = WebSocketManager()
        assert not await manager.send("missing", {"type": "ping"})

    @pytest.mark.asyncio
    async def test_send_failure_disconnects(self) -> None:
        """A failed write drops the connection instead of raising."""
        manager = WebSocketManager()
        mock_ws = _mock_ws()
        mock_ws.send_json.side_effect = RuntimeError("closed")
        await manager.connect(mock_ws, "sess1")

        assert not await manager.send("sess1", {"type": "ping"})
        assert not manager.is_connected("sess1")

    @pytest.mark.asyncio
    async def test_concurrent_sends_are_serialized(self) -> None:
        """Frames from concurrent senders never interleave on one socket."""
        manager = WebSocketManager()
        mock_ws = _mock_ws()
        in_flight = 0
        max_in_flight = 0

        async def slow_send(_message: dict[str, str]) -> None:
            nonlocal in_flight, max_in_flight
            in_flight += 1
            max_in_flight = max(max_in_flight, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1

        mock_ws.send_json.side_effect = slow_send
        await manager.connect(mock_ws, "sess1")

        await asyncio.gather(*(manager.send("sess1", {"type": "output", "data": str(i)}) for i in range(5)))

        assert mock_ws.send_json.await_count == 5
        assert max_in_flight == 1

    @pytest.mark.asyncio
    async def test_broadcast(self) -> None:
        manager = WebSocketManager()
        ws1, ws2 = _mock_ws(), _mock_ws()
        await manager.connect(ws1, "a")
        await manager.connect(ws2, "b")

        await manager.broadcast({"type": "ping"})

        ws1.send_json.assert_called_once_with({"type": "ping"})
        ws2.send_json.assert_called_once_with({"type": "ping"})


class TestIdleTimeout:
    """Tests for idle connection cleanup."""

    @pytest.mark.asyncio
    async def test_idle_connection_closed(self) -> None:
        manager = WebSocketManager(idle_timeout_seconds=10)
        mock_ws = _mock_ws()
        await manager.connect(mock_ws, "sess1")
        manager.last_activity["sess1"] -= 60

        await manager._close_idle_connections()

        mock_ws.close.assert_called_once_with(code=WSCloseCode.IDLE_TIMEOUT, reason="Idle timeout")
        assert not manager.is_connected("sess1")

    @pytest.mark.asyncio
    async def test_touch_keeps_connection(self) -> None:
        manager = WebSocketManager(idle_timeout_seconds=10)
        mock_ws = _mock_ws()
        await manager.connect(mock_ws, "sess1")
        manager.last_activity["sess1"] -= 60
        await manager.touch("sess1")

        await manager._close_idle_connections()

        mock_ws.close.assert_not_called()
        assert manager.is_connected("sess1")

    @pytest.mark.asyncio
    async def test_idle_checker_start_stop(self) -> None:
        manager = WebSocketManager()
        await manager.start_idle_checker()
        assert manager._idle_checker_task is not None
        await manager.stop_idle_checker()
        assert manager._idle_checker_task is None


class TestGracefulShutdown:
    @pytest.mark.asyncio
    async def test_notifies_and_closes(self) -> None:
        manager = WebSocketManager()
        mock_ws = _mock_ws()
        await manager.connect(mock_ws, "sess1")

        await manager.graceful_shutdown(timeout=1)

        sent = mock_ws.send_json.call_args[0][0]
        assert sent["type"] == "server-shutdown"
        mock_ws.close.assert_called_once_with(code=WSCloseCode.GOING_AWAY, reason="Server shutdown")
        assert manager.connection_count == 0
        assert manager.shutting_down
        assert manager.get_stats()["shutting_down"] is True
