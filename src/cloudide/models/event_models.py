"""
WebSocket protocol models for CloudIDE Runner.

Every message is a JSON object discriminated by its ``type`` field. Inbound
messages come from the editor; outbound messages are produced by the gateway
and the process supervisor.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from cloudide.core.constants import (
    MSG_TYPE_OUTPUT,
    MSG_TYPE_PING,
    MSG_TYPE_PROCESS_EXIT,
    MSG_TYPE_RUN,
    MSG_TYPE_SERVER_SHUTDOWN,
    MSG_TYPE_SESSION_READY,
    MSG_TYPE_STOP,
)
from cloudide.models.error_models import WebSocketError

# ============================================================================
# Inbound (editor -> orchestrator)
# ============================================================================


class RunRequest(BaseModel):
    """Run a file set, replacing whatever the session is currently running.

    ``files`` maps a relative filename to its source. The editor sends each
    file either as a plain string or as ``{"value": ..., "language": ...}``;
    both forms normalize to the plain string.
    """

    model_config = ConfigDict(extra="ignore")

    type: Literal["run"] = MSG_TYPE_RUN
    files: dict[str, str]
    language: str | None = None

    @field_validator("files", mode="before")
    @classmethod
    def normalize_files(cls, v: Any) -> Any:
        """Unwrap editor file objects to their source text."""
        if not isinstance(v, dict):
            return v
        normalized: dict[Any, Any] = {}
        for name, content in v.items():
            if isinstance(content, dict):
                if "value" not in content:
                    raise ValueError(f"file {name!r} has no 'value'")
                content = content["value"]
            normalized[name] = content
        return normalized


class StopRequest(BaseModel):
    """Stop the session's running program without starting a new one."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["stop"] = MSG_TYPE_STOP


InboundMessage = Annotated[RunRequest | StopRequest, Field(discriminator="type")]

inbound_adapter: TypeAdapter[RunRequest | StopRequest] = TypeAdapter(InboundMessage)


def parse_inbound(raw: str | bytes) -> RunRequest | StopRequest:
    """Validate a raw WebSocket frame.

    Raises:
        pydantic.ValidationError: If the frame is not a known inbound message.
    """
    return inbound_adapter.validate_json(raw)


# ============================================================================
# Outbound (orchestrator -> editor)
# ============================================================================


class OutboundMessage(BaseModel):
    """Base for messages sent to the editor."""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for WebSocket JSON message."""
        return self.model_dump(mode="json")


class SessionReady(OutboundMessage):
    """Sent once per connection with the port and preview path allocated to it."""

    type: Literal["session-ready"] = MSG_TYPE_SESSION_READY
    session_id: str
    port: int
    preview_path: str


class OutputChunk(OutboundMessage):
    """Console text. Orchestrator lines and stderr carry ANSI colors."""

    type: Literal["output"] = MSG_TYPE_OUTPUT
    data: str


class ProcessExit(OutboundMessage):
    """The guest process exited on its own; ``code`` is None if killed by a signal."""

    type: Literal["process-exit"] = MSG_TYPE_PROCESS_EXIT
    code: int | None


class Ping(OutboundMessage):
    """Keepalive."""

    type: Literal["ping"] = MSG_TYPE_PING


class ServerShutdown(OutboundMessage):
    """The orchestrator is shutting down and will close the connection."""

    type: Literal["server-shutdown"] = MSG_TYPE_SERVER_SHUTDOWN
    message: str = "Server is shutting down"


#: Everything the orchestrator may send; errors use the shared WebSocketError model.
OutboundEvent = SessionReady | OutputChunk | ProcessExit | WebSocketError | Ping | ServerShutdown

__all__ = [
    "InboundMessage",
    "OutboundEvent",
    "OutboundMessage",
    "OutputChunk",
    "Ping",
    "ProcessExit",
    "RunRequest",
    "ServerShutdown",
    "SessionReady",
    "StopRequest",
    "inbound_adapter",
    "parse_inbound",
]
